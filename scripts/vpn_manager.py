#!/usr/bin/env python3
"""VPN 出口故障切换与加权分流守护进程

监控多个 VPN 接口的连通性，用 nftables 把 LAN 新连接按权重分配到当前可用的
VPN 接口，已建立的连接保持原出口；no-vpn-ips 和域名解析得到的 IP 直连。

使用方法：
    # 前台运行守护进程（SIGTERM/SIGINT 停止，SIGHUP 重载配置）
    python3 vpn_manager.py daemon

    # 通知运行中的守护进程重载配置
    python3 vpn_manager.py reload

    # 显示所有接口可用时的分流表
    python3 vpn_manager.py status

    # 维护域名绕过集合
    python3 vpn_manager.py domain add 1.1.1.1 1.0.0.1
    python3 vpn_manager.py domain del 1.0.0.1
    python3 vpn_manager.py domain flush

    # 写入默认配置
    python3 vpn_manager.py init-config
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from domain_allow_set import DomainAllowSetManager
from firewall_gateway import FirewallGateway
from log_config import get_logger, set_log_level, setup_logging
from vpn_config import CONFIG_FILE, load_config, write_default_config
from vpn_controller import ReloadController, ShutdownHooks, preview_distribution
from vpn_errors import ConfigError, VpnManagerError

logger = get_logger("vpn-manager")

PID_FILE = Path(os.environ.get("VPN_MANAGER_PID_FILE", "/run/vpn-manager.pid"))


def write_pid_file(path: Path, pid: int) -> None:
    """原子写入 PID 文件"""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = path.with_suffix(".tmp")
    tmp_file.write_text(str(pid))
    os.replace(tmp_file, path)


def read_running_pid(path: Path) -> Optional[int]:
    """返回 PID 文件中仍存活的进程号，无效的 PID 文件会被删除"""
    if not path.exists():
        return None
    try:
        pid = int(path.read_text().strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError):
        path.unlink(missing_ok=True)
        return None
    except PermissionError:
        return None


async def run_daemon(config_path: Path) -> int:
    """运行控制器直到收到停止信号"""
    existing = read_running_pid(PID_FILE)
    if existing is not None:
        logger.error(f"vpn-manager already running (PID: {existing})")
        return 1

    hooks = ShutdownHooks()
    controller = ReloadController(config_path=config_path, shutdown_hooks=hooks)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()

    def stop_handler():
        logger.info("Received stop signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_handler)
    loop.add_signal_handler(signal.SIGHUP, controller.request_reload)

    try:
        await controller.start()
    except ConfigError as e:
        logger.error(f"Invalid config: {e}")
        return 1
    except VpnManagerError as e:
        logger.error(f"Start failed: {e}")
        return 1

    try:
        write_pid_file(PID_FILE, os.getpid())
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")

    logger.info("vpn-manager started")
    try:
        await stop_event.wait()
    finally:
        await controller.wait_background()
        await hooks.run()
        PID_FILE.unlink(missing_ok=True)
    return 0


def send_reload() -> int:
    pid = read_running_pid(PID_FILE)
    if pid is None:
        logger.error("vpn-manager is not running")
        return 1
    os.kill(pid, signal.SIGHUP)
    logger.info(f"Sent SIGHUP to vpn-manager (PID: {pid})")
    return 0


def show_status(config_path: Path) -> int:
    config = load_config(config_path)
    result = {
        "config": config.to_dict(),
        "running_pid": read_running_pid(PID_FILE),
        "distribution_all_available": preview_distribution(config),
    }
    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


async def run_domain_command(action: str, ips) -> int:
    manager = DomainAllowSetManager(FirewallGateway())
    if action == "add":
        await manager.add(ips)
    elif action == "del":
        await manager.remove(ips)
    else:
        await manager.flush()
    logger.info(f"domain {action} done")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="VPN 出口故障切换与加权分流",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=Path, default=CONFIG_FILE,
                        help=f"配置文件路径（默认 {CONFIG_FILE}）")
    parser.add_argument("--debug", action="store_true", help="启用调试日志")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("daemon", help="运行守护进程（默认）")
    sub.add_parser("reload", help="通知运行中的守护进程重载配置")
    sub.add_parser("status", help="显示配置和分流表")
    sub.add_parser("init-config", help="写入默认配置文件")

    domain = sub.add_parser("domain", help="维护域名绕过 IP 集合")
    domain.add_argument("action", choices=["add", "del", "flush"])
    domain.add_argument("ips", nargs="*", metavar="IP")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging()
    if args.debug:
        set_log_level(logging.DEBUG)

    command = args.command or "daemon"
    try:
        if command == "daemon":
            return asyncio.run(run_daemon(args.config))
        if command == "reload":
            return send_reload()
        if command == "status":
            return show_status(args.config)
        if command == "init-config":
            if args.config.exists():
                logger.error(f"{args.config} already exists")
                return 1
            write_default_config(args.config)
            logger.info(f"Default config written to {args.config}")
            return 0
        if command == "domain":
            if args.action != "flush" and not args.ips:
                parser.error("domain add/del requires at least one IP")
            return asyncio.run(run_domain_command(args.action, args.ips))
    except VpnManagerError as e:
        logger.error(str(e))
        return 1
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
