#!/usr/bin/env python3
"""nft / ip 命令执行器

所有对内核包分类子系统的修改都经由这里。命令以 argv 列表执行（不经过 shell），
失败时抛出 GatewayCommandError，异常中携带命令与合并后的输出，
便于运维人员无需手动重跑即可定位问题。本层不做重试。
"""

import asyncio
import os
from typing import List, Optional, Sequence

from log_config import get_logger
from vpn_errors import GatewayCommandError

logger = get_logger("firewall-gateway")

NFT_BINARY = os.environ.get("NFT_BINARY", "nft")
IP_BINARY = os.environ.get("IP_BINARY", "ip")


class FirewallGateway:
    """异步执行 nft/ip 命令

    Args:
        nft_binary: nft 可执行文件
        ip_binary: ip 可执行文件
    """

    def __init__(self, nft_binary: str = NFT_BINARY, ip_binary: str = IP_BINARY):
        self.nft_binary = nft_binary
        self.ip_binary = ip_binary

    async def run_command(self, cmd: Sequence[str], stdin: Optional[str] = None) -> str:
        """执行命令并返回合并输出

        Raises:
            GatewayCommandError: 进程无法启动或退出码非 0
        """
        argv: List[str] = [str(part) for part in cmd]
        logger.debug(f"exec: {' '.join(argv)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise GatewayCommandError(argv, None, str(e), script=stdin) from e

        stdout, _ = await proc.communicate(stdin.encode() if stdin is not None else None)
        output = stdout.decode(errors="replace").strip() if stdout else ""
        if proc.returncode != 0:
            raise GatewayCommandError(argv, proc.returncode, output, script=stdin)
        return output

    async def nft(self, *args: str) -> str:
        """执行单条 nft 命令，例如 nft("flush", "set", "ip", "vpn_manager", "x")"""
        return await self.run_command([self.nft_binary, *args])

    async def apply_script(self, script: str) -> str:
        """通过 `nft -f -` 原子提交一个脚本"""
        logger.debug(f"nft -f - <<\n{script}")
        return await self.run_command([self.nft_binary, "-f", "-"], stdin=script)

    async def ip(self, *args: str) -> str:
        """执行 ip 命令（策略路由）"""
        return await self.run_command([self.ip_binary, *args])
