#!/usr/bin/env python3
"""绕过 VPN 的域名 IP 集合

外部域名解析模块把需要直连的域名解析结果推送到 no_vpn_domain_ip_set。
该集合独立于重载周期维护：每个操作对应一条 nft 命令，要么整体成功，
要么抛出 GatewayCommandError，不存在部分成功。

    manager = DomainAllowSetManager(gateway)
    await manager.add(["1.1.1.1", "1.0.0.1"])
    await manager.remove(["1.0.0.1"])
    await manager.flush()
"""

from pathlib import Path
from typing import Callable, Iterable, List

from firewall_gateway import FirewallGateway
from log_config import get_logger
from nft_rules import (
    DOMAIN_IP_SET,
    flush_set_command,
    set_elements_command,
    validate_ipv4_address,
)

logger = get_logger("domain-allow-set")

DomainIpFeed = Callable[[], List[str]]


def _normalize(ips: Iterable[str]) -> List[str]:
    """校验并去重（保持顺序）"""
    seen = set()
    result = []
    for ip in ips:
        if ip is None or not str(ip).strip():
            continue
        normalized = validate_ipv4_address(ip)
        if normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


class DomainAllowSetManager:
    """no_vpn_domain_ip_set 的增量维护"""

    def __init__(self, gateway: FirewallGateway):
        self.gateway = gateway

    async def add(self, ips: Iterable[str]) -> None:
        elements = _normalize(ips)
        if not elements:
            return
        await self.gateway.nft(*set_elements_command("add", DOMAIN_IP_SET, elements))
        logger.debug(f"Added {len(elements)} IPs to {DOMAIN_IP_SET}")

    async def remove(self, ips: Iterable[str]) -> None:
        elements = _normalize(ips)
        if not elements:
            return
        # destroy 跳过不存在的元素，重复删除不报错
        await self.gateway.nft(*set_elements_command("destroy", DOMAIN_IP_SET, elements))
        logger.debug(f"Removed {len(elements)} IPs from {DOMAIN_IP_SET}")

    async def flush(self) -> None:
        await self.gateway.nft(*flush_set_command(DOMAIN_IP_SET))
        logger.debug(f"Flushed {DOMAIN_IP_SET}")


class FileDomainIpFeed:
    """从文件读取域名解析出的 IP（每行一个，# 开头为注释）

    文件不存在时返回空列表。
    """

    def __init__(self, path):
        self.path = Path(path)

    def __call__(self) -> List[str]:
        if not self.path.exists():
            logger.debug(f"Domain IP file {self.path} not found")
            return []
        ips = []
        for line in self.path.read_text().splitlines():
            line = line.split("#", 1)[0].strip()
            if line:
                ips.append(line)
        return ips


def empty_feed() -> List[str]:
    return []
