#!/usr/bin/env python3
"""VPN 接口策略路由

vpn 链给连接打上 mark 后，需要策略路由把带该 mark 的流量送到对应接口：

    ip rule add fwmark 0x3e9 table 1001
    ip route replace default dev wg0 table 1001

路由表号与 mark 相同以简化管理。安装时记录对应的删除命令，
stop/reload 时尽力执行，规则已不存在不算错误。

接口在启动时可能尚未创建（Cannot find device），此时只记录警告，
接口变为可用、合成规则前会再次尝试安装默认路由。
"""

from typing import Dict, List, Sequence, Set

from firewall_gateway import FirewallGateway
from log_config import get_logger
from vpn_config import VpnInterfaceSpec
from vpn_errors import GatewayCommandError

logger = get_logger("route-manager")

# 删除时这些输出表示规则本来就不存在
_ABSENT_MARKERS = ("No such file", "No such process", "Cannot find device", "FIB table does not exist")


class RouteManager:
    """管理每个 VPN 接口的 fwmark 规则和默认路由

    Args:
        gateway: 命令执行器
    """

    def __init__(self, gateway: FirewallGateway):
        self.gateway = gateway
        self._cleanup_commands: List[List[str]] = []
        self._routed: Set[str] = set()
        self._specs: Dict[str, VpnInterfaceSpec] = {}

    @property
    def cleanup_commands(self) -> List[List[str]]:
        return [list(cmd) for cmd in self._cleanup_commands]

    async def install(self, specs: Sequence[VpnInterfaceSpec]) -> None:
        """为每个接口安装 fwmark 规则并尝试安装默认路由

        Raises:
            GatewayCommandError: ip rule 安装失败
        """
        for spec in specs:
            mark = str(spec.mark_value)
            try:
                await self.gateway.ip("rule", "add", "fwmark", mark, "table", mark)
            except GatewayCommandError as e:
                if "File exists" not in e.output:
                    raise
                logger.debug(f"IP rule for mark {spec.mark} already exists")
            self._cleanup_commands.append(["rule", "del", "fwmark", mark, "table", mark])
            self._cleanup_commands.append(["route", "flush", "table", mark])
            self._specs[spec.name] = spec
            logger.info(f"IP rule added: fwmark {spec.mark} -> table {mark}")
            await self.ensure_route(spec)

    async def ensure_route(self, spec: VpnInterfaceSpec) -> bool:
        """安装默认路由（幂等），接口不存在时返回 False"""
        if spec.name in self._routed:
            return True
        mark = str(spec.mark_value)
        try:
            await self.gateway.ip("route", "replace", "default", "dev", spec.name, "table", mark)
        except GatewayCommandError as e:
            if "Cannot find device" in e.output:
                logger.warning(f"Interface {spec.name} not found, default route for table {mark} deferred")
            else:
                logger.error(f"Failed to add default route for {spec.name}: {e}")
            return False
        self._routed.add(spec.name)
        logger.info(f"Default route installed: dev {spec.name} table {mark}")
        return True

    async def ensure_routes(self, specs: Sequence[VpnInterfaceSpec]) -> None:
        for spec in specs:
            if spec.name in self._specs:
                await self.ensure_route(spec)

    async def clear(self) -> int:
        """尽力删除已安装的规则和路由，返回失败的命令数"""
        failures = 0
        for cmd in self._cleanup_commands:
            try:
                await self.gateway.ip(*cmd)
            except GatewayCommandError as e:
                if any(marker in e.output for marker in _ABSENT_MARKERS):
                    logger.debug(f"Route cleanup note: {e.output}")
                    continue
                failures += 1
                logger.error(f"clear ip route rule error: {e}")
        self._cleanup_commands = []
        self._routed = set()
        self._specs = {}
        return failures
