#!/usr/bin/env python3
"""
VPN Failover Controller

Owns the lifecycle of one configuration generation:

    uninitialized -> starting -> running -> reloading -> running -> ... -> stopping -> stopped
                      +-> failed (start aborted, everything cleaned up)

start():
    1. load the config (first start only) and subscribe to config-file changes
    2. install the base nft table (sets, chains, LAN selector, static bypass IPs)
    3. install per-interface fwmark policy routes (manage-routes)
    4. launch one LivenessProbe per VPN interface
    5. wait for every probe's first observation, then synthesize the vpn chain once
    6. start the synthesizer worker that serializes later status changes
    7. seed the domain bypass set from the resolution feed

reload() tears the running generation down completely (probes cancelled and
awaited, worker drained, routes removed, table deleted) before starting the
next one. stop() does the same teardown and is a no-op when already stopped.
Start, reload and stop are serialized by one lifecycle lock.

Failure policy:
    - any failure during start aborts startup, cleans up what was installed and
      propagates to the caller
    - every teardown step is best-effort: failures are logged and the next step
      still runs
"""

import asyncio
import time
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from distribution import compute_distribution
from domain_allow_set import DomainAllowSetManager, DomainIpFeed, FileDomainIpFeed, empty_feed
from firewall_gateway import FirewallGateway
from liveness_probe import (
    InterfaceRegistry,
    InterfaceRuntimeState,
    LivenessProbe,
    ReachabilityCheck,
    check_reachability,
)
from log_config import get_logger
from nft_rules import STATIC_IP_SET, delete_table_command, render_base_table, set_elements_command
from route_manager import RouteManager
from rule_synthesizer import RuleSynthesizer
from vpn_config import CONFIG_FILE, Config, ConfigWatcher, load_config
from vpn_errors import ConfigError, GatewayCommandError, VpnManagerError

logger = get_logger("vpn-controller")


class ControllerState(Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    RUNNING = "running"
    RELOADING = "reloading"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class ShutdownHooks:
    """Process shutdown callbacks, each run exactly once."""

    def __init__(self):
        self._hooks: List[Callable[[], Awaitable[Any]]] = []
        self._ran = False

    def register(self, hook: Callable[[], Awaitable[Any]]) -> None:
        self._hooks.append(hook)

    @property
    def ran(self) -> bool:
        return self._ran

    async def run(self) -> None:
        if self._ran:
            return
        self._ran = True
        for hook in reversed(self._hooks):
            try:
                await hook()
            except Exception as e:
                logger.error(f"Shutdown hook failed: {e}")


class ReloadController:
    """Process-wide VPN failover controller.

    Args:
        config_path: YAML config file, watched for changes after first start
        config: Initial config; when given the file is not read on first start
        gateway: Command executor (nft / ip)
        domain_ip_feed: Callable returning bypass-domain IPs to seed at start;
            defaults to the config's domain-ip-file
        shutdown_hooks: Registry that receives ``stop`` after the first start
        check: Reachability check used by the probes
        watch_config: Subscribe to config-file changes on first start
    """

    def __init__(
        self,
        config_path: Path = CONFIG_FILE,
        config: Optional[Config] = None,
        gateway: Optional[FirewallGateway] = None,
        domain_ip_feed: Optional[DomainIpFeed] = None,
        shutdown_hooks: Optional[ShutdownHooks] = None,
        check: ReachabilityCheck = check_reachability,
        watch_config: bool = True,
    ):
        self.config_path = Path(config_path)
        self.gateway = gateway or FirewallGateway()
        self.registry = InterfaceRegistry()
        self.route_manager = RouteManager(self.gateway)
        self.synthesizer = RuleSynthesizer(self.gateway, self.registry)
        self.domain_set = DomainAllowSetManager(self.gateway)
        self.shutdown_hooks = shutdown_hooks
        self.state = ControllerState.UNINITIALIZED
        self.generation = 0

        self._config = config
        self._domain_ip_feed = domain_ip_feed
        self._check = check
        self._watch_config = watch_config
        self._watcher: Optional[ConfigWatcher] = None
        self._lifecycle_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._probe_tasks: List[asyncio.Task] = []
        self._worker_task: Optional[asyncio.Task] = None
        self._table_installed = False
        self._hook_registered = False
        self._background: Set[asyncio.Task] = set()
        self._started_at: Optional[float] = None

    @property
    def config(self) -> Optional[Config]:
        return self._config

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start a generation.

        Raises:
            ConfigError: config missing fields or invalid
            GatewayCommandError: table, route or initial rule install failed
        """
        async with self._lifecycle_lock:
            if self.state in (ControllerState.RUNNING, ControllerState.STARTING):
                logger.warning("Controller already running, start ignored")
                return
            await self._start_locked()

    async def reload(self, new_config: Optional[Config] = None) -> None:
        """Tear down the running generation and start a new one.

        With no argument the config file is re-read. Invalid config leaves the
        running generation untouched.
        """
        async with self._lifecycle_lock:
            if new_config is None:
                new_config = load_config(self.config_path)
            if self.state == ControllerState.STOPPED:
                logger.info("Controller stopped, reload only stores the new config")
                self._config = new_config
                return

            logger.info("Reloading vpn manager")
            self.state = ControllerState.RELOADING
            await self._teardown_locked()
            self._config = new_config
            if self._watcher is not None:
                self._watcher.update_current(new_config)
            await self._start_locked()

    async def stop(self) -> None:
        """Tear everything down. Calling it again is a no-op."""
        async with self._lifecycle_lock:
            if self.state in (ControllerState.UNINITIALIZED, ControllerState.STOPPED):
                return
            if self._watcher is not None:
                await asyncio.to_thread(self._watcher.stop)
                self._watcher = None
            if self.state == ControllerState.FAILED:
                # 启动失败时已清理完毕
                self.state = ControllerState.STOPPED
                return
            self.state = ControllerState.STOPPING
            await self._teardown_locked()
            self.state = ControllerState.STOPPED
            logger.info("vpn manager stopped")

    def request_reload(self) -> None:
        """Schedule a reload from the config file (SIGHUP)."""
        logger.info("Reload requested")
        self._spawn(self._safe_reload(None))

    def on_config_changed(self, config: Config) -> None:
        """Config-file watcher callback, runs on the event loop."""
        self._spawn(self._safe_reload(config))

    async def wait_background(self) -> None:
        """Wait for reloads scheduled by signals or the file watcher."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _safe_reload(self, config: Optional[Config]) -> None:
        try:
            await self.reload(config)
        except ConfigError as e:
            logger.error(f"Reload skipped, invalid config: {e}")
        except VpnManagerError as e:
            logger.error(f"start failed: {e}")

    async def _start_locked(self) -> None:
        if self._config is None:
            self._config = load_config(self.config_path)
        config = self._config

        self.state = ControllerState.STARTING
        self.generation += 1
        logger.info(
            f"Starting generation {self.generation}: "
            f"{len(config.vpn_interfaces)} vpn interfaces, lan={list(config.lan_interfaces)}"
        )
        try:
            await self._install_base_table(config)
            if config.manage_routes:
                await self.route_manager.install(config.vpn_interfaces)
                self.synthesizer.route_manager = self.route_manager
            else:
                self.synthesizer.route_manager = None
            await self._launch_probes(config)
            await self._wait_first_observations()
            # 初始合成覆盖等待期间产生的通知
            self.synthesizer.drain()
            await self.synthesizer.synthesize()
            self._worker_task = asyncio.get_running_loop().create_task(self.synthesizer.run_worker())
        except Exception as e:
            logger.error(f"Start failed, cleaning up: {e}")
            await self._teardown_locked()
            self.state = ControllerState.FAILED
            raise

        self.state = ControllerState.RUNNING
        self._started_at = time.time()

        self._subscribe_config_changes()
        if self.shutdown_hooks is not None and not self._hook_registered:
            self.shutdown_hooks.register(self.stop)
            self._hook_registered = True

        await self._seed_domain_ips(config)

    async def _install_base_table(self, config: Config) -> None:
        script = render_base_table(config.lan_interfaces)
        logger.debug(script)
        await self.gateway.apply_script(script)
        self._table_installed = True
        if config.no_vpn_ips:
            await self.gateway.nft(*set_elements_command("add", STATIC_IP_SET, list(config.no_vpn_ips)))

    async def _launch_probes(self, config: Config) -> None:
        states = await self.registry.populate(config.vpn_interfaces)
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for state in states:
            probe = LivenessProbe(
                spec=state.spec,
                registry=self.registry,
                targets=config.ping_addresses,
                timeout=config.ping_timeout_seconds,
                on_status_changed=self.synthesizer.notify,
                failure_threshold=config.probe_failure_threshold,
                check=self._check,
            )
            state.task = loop.create_task(probe.run(self._stop_event), name=f"probe-{state.spec.name}")
            self._probe_tasks.append(state.task)

    async def _wait_first_observations(self) -> None:
        states = await self.registry.states()
        await asyncio.gather(*(self._first_observation(state) for state in states))

    @staticmethod
    async def _first_observation(state: InterfaceRuntimeState) -> None:
        waiter = asyncio.ensure_future(state.first_observation.wait())
        try:
            await asyncio.wait({waiter, state.task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()
        if not state.first_observation.is_set():
            # 探测任务在首次观测前退出：重新抛出其异常
            state.task.result()
            raise VpnManagerError(f"Probe for {state.spec.name} exited before first observation")

    async def _stop_probes(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        tasks, self._probe_tasks = self._probe_tasks, []
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, Exception):
                logger.error(f"{task.get_name()} exited with error: {result}")
        self._stop_event = None

    async def _teardown_locked(self) -> None:
        """Best-effort teardown of the current generation."""
        try:
            await self._stop_probes()
        except Exception as e:
            logger.error(f"stop probes failed: {e}")

        if self._worker_task is not None:
            try:
                await self.synthesizer.stop_worker(self._worker_task)
            except Exception as e:
                logger.error(f"stop synthesizer worker failed: {e}")
            self._worker_task = None
        self.synthesizer.drain()

        failures = await self.route_manager.clear()
        if failures:
            logger.warning(f"{failures} route cleanup commands failed")

        if self._table_installed:
            try:
                await self.gateway.nft(*delete_table_command())
            except GatewayCommandError as e:
                logger.error(f"delete table failed: {e}")
            self._table_installed = False
        self.synthesizer.forget()
        await self.registry.clear()

    def _subscribe_config_changes(self) -> None:
        if not self._watch_config or self._watcher is not None:
            return
        watcher = ConfigWatcher(
            self.config_path,
            self._config,
            self.on_config_changed,
            loop=asyncio.get_running_loop(),
        )
        try:
            watcher.start()
        except OSError as e:
            logger.warning(f"Config watch unavailable for {self.config_path}: {e}")
            return
        self._watcher = watcher

    async def _seed_domain_ips(self, config: Config) -> None:
        feed = self._domain_ip_feed
        if feed is None:
            feed = FileDomainIpFeed(config.domain_ip_file) if config.domain_ip_file else empty_feed
        try:
            ips = feed()
        except OSError as e:
            logger.error(f"read no vpn domain ips failed: {e}")
            return
        if not ips:
            return
        try:
            await self.domain_set.add(ips)
            logger.info(f"Seeded {len(ips)} no vpn domain ips")
        except VpnManagerError as e:
            logger.error(f"add no vpn domain ip failed: {e}")

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    async def get_status(self) -> Dict[str, Any]:
        states = await self.registry.states()
        active = self.synthesizer.active_table
        return {
            "state": self.state.value,
            "generation": self.generation,
            "started_at": self._started_at,
            "interfaces": [s.to_dict() for s in states],
            "distribution": active.to_dict() if active is not None else None,
        }


def preview_distribution(config: Config) -> Dict[str, Any]:
    """Distribution when every configured interface is available (--status)."""
    table = compute_distribution((i.mark, i.weight) for i in config.vpn_interfaces)
    return table.to_dict()
