#!/usr/bin/env python3
"""vpn-manager 异常定义

    VpnManagerError
    ├── ConfigError          配置缺失/格式错误/校验失败（启动时致命）
    ├── RuleValidationError  规则构建阶段的参数校验失败（不会执行任何命令）
    └── GatewayCommandError  nft / ip 命令执行失败（附带命令和输出）
"""

from typing import Optional, Sequence


class VpnManagerError(Exception):
    """vpn-manager 所有异常的基类"""


class ConfigError(VpnManagerError):
    """配置错误"""


class RuleValidationError(VpnManagerError, ValueError):
    """规则参数非法（表/链/集合名、区间、mark、地址）"""


class GatewayCommandError(VpnManagerError):
    """外部命令执行失败

    Attributes:
        command: 执行的命令（argv 列表）
        returncode: 退出码，进程无法启动时为 None
        output: stdout + stderr 合并输出
        script: 通过 stdin 传入的 nft 脚本（如有）
    """

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int],
        output: str,
        script: Optional[str] = None,
    ):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        self.script = script
        message = f"failed to execute cmd '{' '.join(self.command)}' (exit {returncode}), output: {output}"
        if script:
            message += f"\nscript:\n{script}"
        super().__init__(message)
