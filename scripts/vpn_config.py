#!/usr/bin/env python3
"""vpn-manager 配置

配置文件（YAML，默认 /etc/vpnmanager/config.yml）：

    vpn-interfaces:
      - name: wg0
        weight: 2
        mark: "0x3e9"
      - name: wg1
        weight: 1
        mark: "0x3ea"
    lan-interfaces: [br-lan]
    no-vpn-ips: [192.168.0.0/16]
    ping-addresses: [8.8.8.8, cloudflare.com]
    ping-timeout-seconds: 4
    probe-failure-threshold: 2      # 连续失败多少次判定为不可用
    manage-routes: true             # 为每个接口安装 fwmark 策略路由
    domain-ip-file: /run/vpnmanager/domain-ips   # 可选

Config 对象不可变，配置变化时整体替换。文件监听使用 watchdog，
变化经 loop.call_soon_threadsafe 投递到事件循环。
"""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import yaml
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from log_config import get_logger
from nft_rules import (
    format_mark,
    parse_mark,
    validate_interface_name,
    validate_ipv4_network,
)
from vpn_errors import ConfigError, RuleValidationError

logger = get_logger("vpn-config")

CONFIG_FILE = Path(os.environ.get("VPN_MANAGER_CONFIG", "/etc/vpnmanager/config.yml"))

DEFAULT_PROBE_FAILURE_THRESHOLD = 2

# 标记同时作为路由表号：unspec / default / main / local
RESERVED_ROUTE_TABLES = frozenset({0, 253, 254, 255})


@dataclass(frozen=True)
class VpnInterfaceSpec:
    """一个 VPN 出口：接口名、权重、包标记"""
    name: str
    weight: int = 1
    mark: str = "0x3e9"

    @property
    def effective_weight(self) -> int:
        return self.weight if self.weight >= 1 else 1

    @property
    def mark_value(self) -> int:
        return parse_mark(self.mark)


@dataclass(frozen=True)
class Config:
    vpn_interfaces: Tuple[VpnInterfaceSpec, ...] = (
        VpnInterfaceSpec(name="vpn", weight=1, mark="0x3e9"),
    )
    lan_interfaces: Tuple[str, ...] = ("br-lan",)
    no_vpn_ips: Tuple[str, ...] = ("192.168.0.0/16",)
    ping_addresses: Tuple[str, ...] = ("8.8.8.8", "cloudflare.com")
    ping_timeout_seconds: int = 4
    probe_failure_threshold: int = DEFAULT_PROBE_FAILURE_THRESHOLD
    manage_routes: bool = True
    domain_ip_file: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "vpn-interfaces": [
                {"name": i.name, "weight": i.weight, "mark": i.mark} for i in self.vpn_interfaces
            ],
            "lan-interfaces": list(self.lan_interfaces),
            "no-vpn-ips": list(self.no_vpn_ips),
            "ping-addresses": list(self.ping_addresses),
            "ping-timeout-seconds": self.ping_timeout_seconds,
            "probe-failure-threshold": self.probe_failure_threshold,
            "manage-routes": self.manage_routes,
        }
        if self.domain_ip_file:
            data["domain-ip-file"] = self.domain_ip_file
        return data


DEFAULT_CONFIG = Config()


def _string_list(data: Dict[str, Any], key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = data.get(key, default)
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"'{key}' must be a list")
    return tuple(str(v).strip() for v in value if str(v).strip())


def _positive_int(data: Dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"'{key}' must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}") from None
    if number < 1:
        raise ConfigError(f"'{key}' must be >= 1, got {number}")
    return number


def _parse_interface(raw: Any, index: int) -> VpnInterfaceSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"vpn-interfaces[{index}] must be a mapping")
    name = str(raw.get("name", "")).strip()
    try:
        validate_interface_name(name)
    except RuleValidationError as e:
        raise ConfigError(f"vpn-interfaces[{index}]: {e}") from None

    weight = raw.get("weight", 1)
    try:
        weight = int(weight)
    except (TypeError, ValueError):
        raise ConfigError(f"vpn-interfaces[{index}] ({name}): invalid weight {weight!r}") from None
    if weight < 1:
        logger.warning(f"Interface {name}: weight {weight} floored to 1")
        weight = 1

    if "mark" not in raw:
        raise ConfigError(f"vpn-interfaces[{index}] ({name}): missing mark")
    mark = raw["mark"]
    try:
        value = parse_mark(mark)
    except RuleValidationError as e:
        raise ConfigError(f"vpn-interfaces[{index}] ({name}): {e}") from None
    if value in RESERVED_ROUTE_TABLES:
        raise ConfigError(
            f"vpn-interfaces[{index}] ({name}): mark {mark} is a reserved routing table"
        )
    return VpnInterfaceSpec(name=name, weight=weight, mark=format_mark(mark))


def parse_config(data: Optional[Dict[str, Any]]) -> Config:
    """把 YAML 文档转换成 Config（缺省字段使用默认值）

    Raises:
        ConfigError: 字段类型错误或校验失败
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Config document must be a mapping")

    if "vpn-interfaces" in data:
        raw_interfaces = data.get("vpn-interfaces") or []
        if not isinstance(raw_interfaces, list):
            raise ConfigError("'vpn-interfaces' must be a list")
        interfaces = tuple(_parse_interface(raw, i) for i, raw in enumerate(raw_interfaces))
    else:
        interfaces = DEFAULT_CONFIG.vpn_interfaces

    names = [i.name for i in interfaces]
    duplicates = {n for n in names if names.count(n) > 1}
    if duplicates:
        raise ConfigError(f"Duplicate vpn interface names: {', '.join(sorted(duplicates))}")
    marks = [i.mark_value for i in interfaces]
    if len(set(marks)) != len(marks):
        raise ConfigError("Duplicate vpn interface marks")

    lan_interfaces = _string_list(data, "lan-interfaces", DEFAULT_CONFIG.lan_interfaces)
    try:
        for name in lan_interfaces:
            validate_interface_name(name)
        no_vpn_ips = tuple(
            validate_ipv4_network(cidr)
            for cidr in _string_list(data, "no-vpn-ips", DEFAULT_CONFIG.no_vpn_ips)
        )
    except RuleValidationError as e:
        raise ConfigError(str(e)) from None

    ping_addresses = _string_list(data, "ping-addresses", DEFAULT_CONFIG.ping_addresses)
    if interfaces and not ping_addresses:
        raise ConfigError("'ping-addresses' must not be empty")

    manage_routes = data.get("manage-routes", DEFAULT_CONFIG.manage_routes)
    if not isinstance(manage_routes, bool):
        raise ConfigError("'manage-routes' must be a boolean")

    domain_ip_file = data.get("domain-ip-file")
    return Config(
        vpn_interfaces=interfaces,
        lan_interfaces=lan_interfaces,
        no_vpn_ips=no_vpn_ips,
        ping_addresses=ping_addresses,
        ping_timeout_seconds=_positive_int(data, "ping-timeout-seconds", DEFAULT_CONFIG.ping_timeout_seconds),
        probe_failure_threshold=_positive_int(data, "probe-failure-threshold", DEFAULT_CONFIG.probe_failure_threshold),
        manage_routes=manage_routes,
        domain_ip_file=str(domain_ip_file) if domain_ip_file else None,
    )


def load_config(path: Path = CONFIG_FILE) -> Config:
    """读取配置文件

    文件不存在时使用默认配置；YAML 语法错误或字段非法时抛出 ConfigError。
    """
    path = Path(path)
    if not path.exists():
        logger.warning(f"Config file {path} not found, using defaults")
        return DEFAULT_CONFIG
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e
    return parse_config(data)


def write_default_config(path: Path = CONFIG_FILE) -> None:
    """写入默认配置模板（--init-config）"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(DEFAULT_CONFIG.to_dict(), allow_unicode=True, default_flow_style=False, sort_keys=False))


class _ConfigFileHandler(FileSystemEventHandler):
    def __init__(self, watcher: "ConfigWatcher"):
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(p and Path(p).name == self._watcher.path.name for p in paths):
            self._watcher.check()


class ConfigWatcher:
    """监听配置文件变化

    watchdog 在自己的线程里回调；解析成功且内容变化时，通过
    loop.call_soon_threadsafe 把新 Config 交给 on_change。解析失败只记录日志，
    当前配置保持不变。
    """

    def __init__(
        self,
        path: Path,
        current: Config,
        on_change: Callable[[Config], None],
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.path = Path(path)
        self._current = current
        self._on_change = on_change
        self._loop = loop
        self._observer: Optional[Observer] = None

    def update_current(self, config: Config) -> None:
        """重载后同步当前配置，避免同一内容再次触发"""
        self._current = config

    def check(self) -> bool:
        """重新读取配置，变化时通知，返回是否发生变化"""
        try:
            new_config = load_config(self.path)
        except ConfigError as e:
            logger.error(f"Ignoring invalid config change: {e}")
            return False
        if new_config == self._current:
            return False
        self._current = new_config
        logger.info("config changed")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._on_change, new_config)
        else:
            self._on_change(new_config)
        return True

    def start(self) -> None:
        if self._observer is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(_ConfigFileHandler(self), str(self.path.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(f"Watching config file {self.path}")

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
