#!/usr/bin/env python3
"""nftables 规则构建器

所有 nft 命令和脚本都在这里生成。生成前先校验表/链/集合名、接口名、mark、
区间和地址，非法参数抛出 RuleValidationError，不会产生任何命令。

对象模型（ip 族，表 vpn_manager）：

    set no_vpn_domain_ip_set   ipv4_addr                 动态，由域名解析结果维护
    set no_vpn_ip_set          ipv4_addr, flags interval 静态，启动时写入 no-vpn-ips
    chain prerouting           hook prerouting，LAN 入口流量 -> select_export
    chain select_export        命中任一绕过集合则 return，否则 jump vpn
    chain vpn                  reject / 单出口 mark / 加权分流
"""

import ipaddress
import re
from typing import Iterable, List, Sequence

from distribution import BUCKET_RANGE, Bucket, DistributionTable, KIND_REJECT, KIND_SINGLE
from vpn_errors import RuleValidationError

TABLE_FAMILY = "ip"
TABLE_NAME = "vpn_manager"

DOMAIN_IP_SET = "no_vpn_domain_ip_set"
STATIC_IP_SET = "no_vpn_ip_set"

PREROUTING_CHAIN = "prerouting"
SELECT_EXPORT_CHAIN = "select_export"
VPN_CHAIN = "vpn"

CHAINS = (PREROUTING_CHAIN, SELECT_EXPORT_CHAIN, VPN_CHAIN)
SETS = (DOMAIN_IP_SET, STATIC_IP_SET)

MARK_MIN = 1
MARK_MAX = 0xFFFFFFFF

# nft 标识符：字母开头，字母数字下划线
IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_]*$')

# Linux 接口名规则：字母数字开头，允许字母数字、连字符、下划线和点，最长15字符
INTERFACE_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9_.\-]*$')
MAX_INTERFACE_NAME_LEN = 15


def validate_identifier(name: str) -> str:
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise RuleValidationError(f"Invalid nft identifier: {name!r}")
    return name


def validate_chain(name: str) -> str:
    validate_identifier(name)
    if name not in CHAINS:
        raise RuleValidationError(f"Unknown chain: {name}")
    return name


def validate_set(name: str) -> str:
    validate_identifier(name)
    if name not in SETS:
        raise RuleValidationError(f"Unknown set: {name}")
    return name


def validate_interface_name(name: str) -> str:
    if (not isinstance(name, str) or not name
            or len(name) > MAX_INTERFACE_NAME_LEN
            or not INTERFACE_NAME_PATTERN.match(name)):
        raise RuleValidationError(f"Invalid interface name: {name!r}")
    return name


def parse_mark(value) -> int:
    """解析 mark（支持 1001、"1001"、"0x3e9"）"""
    if isinstance(value, bool):
        raise RuleValidationError(f"Invalid mark: {value!r}")
    if isinstance(value, int):
        mark = value
    elif isinstance(value, str):
        try:
            mark = int(value.strip(), 0)
        except ValueError:
            raise RuleValidationError(f"Invalid mark: {value!r}") from None
    else:
        raise RuleValidationError(f"Invalid mark: {value!r}")
    if not MARK_MIN <= mark <= MARK_MAX:
        raise RuleValidationError(f"Mark out of range: {value!r}")
    return mark


def format_mark(value) -> str:
    return f"0x{parse_mark(value):x}"


def validate_ipv4_address(value: str) -> str:
    try:
        return str(ipaddress.IPv4Address(str(value).strip()))
    except ValueError:
        raise RuleValidationError(f"Invalid IPv4 address: {value!r}") from None


def validate_ipv4_network(value: str) -> str:
    """校验 IPv4 CIDR（也接受单个地址），返回规范化形式"""
    text = str(value).strip()
    try:
        network = ipaddress.IPv4Network(text, strict=False)
    except ValueError:
        raise RuleValidationError(f"Invalid IPv4 network: {value!r}") from None
    if network.prefixlen == 32 and "/" not in text:
        return str(network.network_address)
    return network.with_prefixlen


def _element_list(elements: Iterable[str]) -> str:
    return "{ " + ", ".join(elements) + " }"


def render_lan_selector(lan_interfaces: Sequence[str]) -> str:
    """prerouting 链中选择 LAN 流量的规则，无 LAN 接口时为空"""
    names = [validate_interface_name(name) for name in lan_interfaces]
    if not names:
        return ""
    if len(names) == 1:
        return f"iifname {names[0]} jump {SELECT_EXPORT_CHAIN}"
    return f"iifname {_element_list(names)} jump {SELECT_EXPORT_CHAIN}"


def render_base_table(lan_interfaces: Sequence[str], replace: bool = True) -> str:
    """生成基础表定义脚本（nft -f -）

    replace=True 时先删除上次异常退出残留的同名表，整个脚本在同一事务中生效
    """
    selector = render_lan_selector(lan_interfaces)
    prefix = ""
    if replace:
        prefix = f"table {TABLE_FAMILY} {TABLE_NAME}\ndelete table {TABLE_FAMILY} {TABLE_NAME}\n"
    return prefix + f"""
table {TABLE_FAMILY} {TABLE_NAME} {{

    set {DOMAIN_IP_SET} {{
        type ipv4_addr;
    }}

    set {STATIC_IP_SET} {{
        type ipv4_addr;flags interval;
    }}

    chain {PREROUTING_CHAIN} {{
        type filter hook prerouting priority 0;
        {selector}
    }}

    chain {SELECT_EXPORT_CHAIN} {{
        ip daddr @{STATIC_IP_SET} return
        ip daddr @{DOMAIN_IP_SET} return
        jump {VPN_CHAIN}
    }}

    chain {VPN_CHAIN} {{
        reject
    }}

}}
"""


def reject_rule() -> str:
    return "reject"


def single_mark_rule(mark) -> str:
    """无条件给连接打单一出口的 mark，并记入 conntrack"""
    return f"meta mark set {format_mark(mark)} ct mark set meta mark"


def restore_mark_rule() -> str:
    """已建立/相关连接沿用 conntrack 中记录的 mark"""
    return "ct state established,related meta mark set ct mark"


def render_bucket(bucket: Bucket) -> str:
    if bucket.is_empty:
        raise RuleValidationError(f"Empty bucket cannot be rendered: {bucket}")
    if not 0 <= bucket.start <= bucket.end < BUCKET_RANGE:
        raise RuleValidationError(f"Bucket out of range: {bucket}")
    mark = format_mark(bucket.tag)
    if bucket.start == bucket.end:
        return f"{bucket.start} : {mark}"
    return f"{bucket.start}-{bucket.end} : {mark}"


def validate_coverage(buckets: Sequence[Bucket]) -> None:
    """非空区间必须连续、不重叠，并恰好覆盖 [0, 99]"""
    expected = 0
    for bucket in buckets:
        if bucket.is_empty:
            continue
        if bucket.start != expected:
            raise RuleValidationError(f"Buckets not contiguous at {bucket}")
        expected = bucket.end + 1
    if expected != BUCKET_RANGE:
        raise RuleValidationError(f"Buckets cover [0, {expected - 1}] instead of [0, {BUCKET_RANGE - 1}]")


def distribution_rule(buckets: Sequence[Bucket]) -> str:
    """新连接按随机数查表选择 mark，并记入 conntrack"""
    validate_coverage(buckets)
    entries = [render_bucket(b) for b in buckets if not b.is_empty]
    return (
        f"ct state new meta mark set numgen random mod {BUCKET_RANGE} map "
        f"{_element_list(entries)} ct mark set meta mark"
    )


def vpn_chain_rules(table: DistributionTable) -> List[str]:
    """根据分流表生成 vpn 链的规则列表"""
    if table.kind == KIND_REJECT:
        return [reject_rule()]
    if table.kind == KIND_SINGLE:
        return [single_mark_rule(table.single_tag)]
    return [restore_mark_rule(), distribution_rule(table.buckets)]


class NftScript:
    """nft -f - 批量脚本，整个脚本由内核作为一个事务提交"""

    def __init__(self):
        self._lines: List[str] = []

    def flush_chain(self, chain: str) -> "NftScript":
        self._lines.append(f"flush chain {TABLE_FAMILY} {TABLE_NAME} {validate_chain(chain)}")
        return self

    def add_rule(self, chain: str, rule: str) -> "NftScript":
        if not rule or "\n" in rule or ";" in rule:
            raise RuleValidationError(f"Invalid rule text: {rule!r}")
        self._lines.append(f"add rule {TABLE_FAMILY} {TABLE_NAME} {validate_chain(chain)} {rule}")
        return self

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    def render(self) -> str:
        return "\n".join(self._lines) + "\n"


def vpn_chain_script(table: DistributionTable) -> NftScript:
    """清空 vpn 链并写入新规则（同一事务）"""
    script = NftScript().flush_chain(VPN_CHAIN)
    for rule in vpn_chain_rules(table):
        script.add_rule(VPN_CHAIN, rule)
    return script


def set_elements_command(action: str, set_name: str, elements: Sequence[str]) -> List[str]:
    """add/delete/destroy element 命令的 argv（不含 nft 本身）

    destroy 与 delete 相同，但会跳过集合中不存在的元素
    """
    if action not in ("add", "delete", "destroy"):
        raise RuleValidationError(f"Invalid element action: {action}")
    validate_set(set_name)
    if not elements:
        raise RuleValidationError("Element list is empty")
    if set_name == STATIC_IP_SET:
        normalized = [validate_ipv4_network(e) for e in elements]
    else:
        normalized = [validate_ipv4_address(e) for e in elements]
    return [action, "element", TABLE_FAMILY, TABLE_NAME, set_name, _element_list(normalized)]


def flush_set_command(set_name: str) -> List[str]:
    return ["flush", "set", TABLE_FAMILY, TABLE_NAME, validate_set(set_name)]


def delete_table_command() -> List[str]:
    return ["delete", "table", TABLE_FAMILY, TABLE_NAME]
