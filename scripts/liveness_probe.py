#!/usr/bin/env python3
"""VPN 接口存活探测

每个 VPN 接口一个探测任务：按 ping-timeout-seconds 的节奏通过该接口 ping
ping-addresses，任一目标可达即视为可用。只有状态发生变化时才通知，
探测失败本身不是错误，而是状态信号。

防抖：可用 -> 不可用需要连续 probe-failure-threshold 次失败；
不可用 -> 可用只需一次成功；首次观测直接确定状态且不触发通知。

所有运行时状态保存在 InterfaceRegistry 中，由 asyncio.Lock 保护，
探测任务和规则合成器都通过它读写。
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from log_config import get_logger
from vpn_config import VpnInterfaceSpec

logger = get_logger("liveness-probe")

PING_BINARY = "ping"


class InterfaceStatus(Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


@dataclass
class InterfaceRuntimeState:
    """单个接口在当前配置代中的运行时状态"""
    spec: VpnInterfaceSpec
    status: InterfaceStatus = InterfaceStatus.UNAVAILABLE
    last_transition: Optional[float] = None
    consecutive_failures: int = 0
    observed: bool = False
    task: Optional[asyncio.Task] = None
    first_observation: asyncio.Event = field(default_factory=asyncio.Event)

    def to_dict(self) -> dict:
        return {
            "name": self.spec.name,
            "weight": self.spec.weight,
            "mark": self.spec.mark,
            "status": self.status.value,
            "observed": self.observed,
            "consecutive_failures": self.consecutive_failures,
            "last_transition": self.last_transition,
        }


class InterfaceRegistry:
    """接口名 -> InterfaceRuntimeState，保持配置顺序，所有访问加锁"""

    def __init__(self):
        self._states: Dict[str, InterfaceRuntimeState] = {}
        self._lock = asyncio.Lock()

    async def populate(self, specs: Iterable[VpnInterfaceSpec]) -> List[InterfaceRuntimeState]:
        async with self._lock:
            if self._states:
                raise RuntimeError("Registry already populated; clear it first")
            for spec in specs:
                self._states[spec.name] = InterfaceRuntimeState(spec=spec)
            return list(self._states.values())

    async def clear(self) -> List[InterfaceRuntimeState]:
        async with self._lock:
            states = list(self._states.values())
            self._states = {}
            return states

    async def get(self, name: str) -> Optional[InterfaceRuntimeState]:
        async with self._lock:
            return self._states.get(name)

    async def states(self) -> List[InterfaceRuntimeState]:
        async with self._lock:
            return list(self._states.values())

    async def available_specs(self) -> List[VpnInterfaceSpec]:
        """当前可用接口（配置顺序）"""
        async with self._lock:
            return [
                s.spec for s in self._states.values()
                if s.status == InterfaceStatus.AVAILABLE
            ]

    async def record_observation(
        self,
        name: str,
        reachable: bool,
        failure_threshold: int = 1,
    ) -> Optional[InterfaceStatus]:
        """记录一次探测结果

        Returns:
            状态发生变化时返回新状态（首次观测不算变化），否则 None
        """
        async with self._lock:
            state = self._states.get(name)
            if state is None:
                return None

            if reachable:
                state.consecutive_failures = 0
                new_status = InterfaceStatus.AVAILABLE
            else:
                state.consecutive_failures += 1
                if not state.observed or state.consecutive_failures >= failure_threshold:
                    new_status = InterfaceStatus.UNAVAILABLE
                else:
                    new_status = state.status

            first = not state.observed
            changed = new_status != state.status
            if changed or first:
                state.status = new_status
                state.last_transition = time.time()
            if first:
                state.observed = True
                state.first_observation.set()
                return None
            return new_status if changed else None


def _kill(proc) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass


async def ping_target(interface: str, target: str, timeout: int) -> bool:
    """通过指定接口 ping 一次目标（IP 或域名）"""
    proc = await asyncio.create_subprocess_exec(
        PING_BINARY, "-c", "1", "-W", str(int(timeout)), "-I", interface, target,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        returncode = await asyncio.wait_for(proc.wait(), timeout=timeout + 2)
    except asyncio.TimeoutError:
        _kill(proc)
        await proc.wait()
        return False
    except asyncio.CancelledError:
        _kill(proc)
        raise
    return returncode == 0


async def check_reachability(interface: str, targets: Sequence[str], timeout: int) -> bool:
    """任一目标可达即返回 True；无法执行 ping 也视为不可达"""
    for target in targets:
        try:
            if await ping_target(interface, target, timeout):
                return True
        except OSError as e:
            logger.debug(f"[{interface}] ping {target} failed to start: {e}")
    return False


ReachabilityCheck = Callable[[str, Sequence[str], int], Awaitable[bool]]
StatusCallback = Callable[[str, InterfaceStatus], None]


class LivenessProbe:
    """单个接口的探测循环

    Args:
        spec: 接口配置
        registry: 共享运行时状态
        targets: 探测目标
        timeout: 单次探测超时（秒），同时作为探测间隔
        on_status_changed: 状态变化回调（每次变化恰好调用一次）
        failure_threshold: 连续失败阈值
        check: 可达性检查函数（测试时替换）
    """

    def __init__(
        self,
        spec: VpnInterfaceSpec,
        registry: InterfaceRegistry,
        targets: Sequence[str],
        timeout: int,
        on_status_changed: StatusCallback,
        failure_threshold: int = 1,
        check: ReachabilityCheck = check_reachability,
    ):
        self.spec = spec
        self.registry = registry
        self.targets = list(targets)
        self.timeout = timeout
        self.on_status_changed = on_status_changed
        self.failure_threshold = max(1, failure_threshold)
        self._check = check

    async def run(self, stop_event: asyncio.Event) -> None:
        """运行直到 stop_event 被设置或任务被取消"""
        name = self.spec.name
        logger.debug(f"[{name}] probe started (targets={self.targets}, interval={self.timeout}s)")
        while not stop_event.is_set():
            reachable = await self._check(name, self.targets, self.timeout)
            if stop_event.is_set():
                break

            transition = await self.registry.record_observation(name, reachable, self.failure_threshold)
            if transition is not None and not stop_event.is_set():
                logger.info(f"[{name}] status changed: {transition.value}")
                self.on_status_changed(name, transition)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.timeout)
            except asyncio.TimeoutError:
                pass
        logger.debug(f"[{name}] probe stopped")
