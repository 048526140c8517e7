#!/usr/bin/env python3
"""vpn 链规则合成

根据当前可用接口计算分流表，并以单个 `nft -f -` 事务重写 vpn 链：

    0 个可用接口   reject
    1 个可用接口   meta mark set <mark> ct mark set meta mark
    N 个可用接口   ct state established,related meta mark set ct mark
                   ct state new meta mark set numgen random mod 100 map {...} ct mark set meta mark

已建立连接沿用 conntrack 中记录的 mark，分流决策只在连接建立时做一次，
之后权重或可用性变化不会让连接中途换出口。

状态变化通知进入队列，由唯一的 worker 串行消费；合并同一批通知只合成一次。
所有合成都持有同一把锁，不会有两次合成交错执行。
"""

import asyncio
from typing import Optional, Tuple

from distribution import DistributionTable, compute_distribution
from firewall_gateway import FirewallGateway
from liveness_probe import InterfaceRegistry, InterfaceStatus
from log_config import get_logger
from nft_rules import vpn_chain_script
from route_manager import RouteManager
from vpn_errors import VpnManagerError

logger = get_logger("rule-synthesizer")

# 队列哨兵：worker 收到后退出
_STOP = None


class RuleSynthesizer:
    """把可用接口集合转换成 vpn 链规则并提交

    Args:
        gateway: nft 执行器
        registry: 接口运行时状态
        route_manager: 可选，合成前为可用接口补装默认路由
    """

    def __init__(
        self,
        gateway: FirewallGateway,
        registry: InterfaceRegistry,
        route_manager: Optional[RouteManager] = None,
    ):
        self.gateway = gateway
        self.registry = registry
        self.route_manager = route_manager
        self._lock = asyncio.Lock()
        self._queue: "asyncio.Queue[Optional[Tuple[str, InterfaceStatus]]]" = asyncio.Queue()
        self._active_table: Optional[DistributionTable] = None
        self.passes = 0

    @property
    def active_table(self) -> Optional[DistributionTable]:
        """当前已安装的分流表，未安装时为 None"""
        return self._active_table

    async def synthesize(self) -> DistributionTable:
        """按当前可用接口重写 vpn 链

        Raises:
            RuleValidationError: 标记无法渲染
            GatewayCommandError: nft 拒绝了脚本（原规则保持不变）
        """
        async with self._lock:
            specs = await self.registry.available_specs()
            if self.route_manager is not None:
                await self.route_manager.ensure_routes(specs)
            table = compute_distribution((spec.mark, spec.weight) for spec in specs)
            script = vpn_chain_script(table)
            await self.gateway.apply_script(script.render())
            self._active_table = table
            self.passes += 1
            names = ", ".join(s.name for s in specs) or "none"
            logger.info(f"vpn chain updated: {table.kind} (available: {names})")
            return table

    def forget(self) -> None:
        """表被删除后调用，清除已安装记录"""
        self._active_table = None

    def notify(self, name: str, status: InterfaceStatus) -> None:
        """探测任务的状态变化回调（不阻塞）"""
        self._queue.put_nowait((name, status))

    async def run_worker(self) -> None:
        """串行消费状态变化通知，直到收到停止哨兵"""
        while True:
            item = await self._queue.get()
            if item is _STOP:
                break
            stopping = False
            # 合并已排队的通知
            while not self._queue.empty():
                if self._queue.get_nowait() is _STOP:
                    stopping = True
                    break
            if stopping:
                break
            try:
                await self.synthesize()
            except VpnManagerError as e:
                # 不重试，下一次状态变化或重载会重新合成
                logger.error(f"set vpn chain rule error: {e}")
        logger.debug("synthesizer worker stopped")

    async def stop_worker(self, task: "asyncio.Task") -> None:
        """丢弃未处理的通知，让 worker 结束当前合成后退出，并等待其结束"""
        if task.done():
            return
        self.drain()
        self._queue.put_nowait(_STOP)
        await task

    def drain(self) -> int:
        """丢弃尚未处理的通知（新配置代开始前调用）"""
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        return dropped
