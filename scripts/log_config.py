#!/usr/bin/env python3
"""
vpn-manager 日志配置

环境变量：
- LOG_LEVEL: DEBUG / INFO / WARNING / ERROR / CRITICAL，也接受数字
- DEBUG: "1"/"true" 时等同于 LOG_LEVEL=DEBUG（LOG_LEVEL 优先）
- VPN_MANAGER_LOG_FILE: 额外写入的日志文件，配合 logrotate 使用

各组件使用固定的 logger 名（vpn-controller、liveness-probe、rule-synthesizer ...），
守护进程只需在入口调用一次 setup_logging()。
"""

import logging
import logging.handlers
import os
import sys
from typing import Optional, Union

DEFAULT_LOG_LEVEL = logging.INFO

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FORMAT_DETAILED = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# watchdog 的 inotify 线程在 DEBUG 下每个事件都会打日志
NOISY_LOGGERS = ("watchdog", "asyncio")

_ALIASES = {"WARN": logging.WARNING, "FATAL": logging.CRITICAL}

_configured = False


def parse_level(value: Union[str, int, None], default: int = DEFAULT_LOG_LEVEL) -> int:
    """日志级别名或数字 -> logging 常量，无法识别时返回 default"""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = value.strip().upper()
    if not text:
        return default
    if text.isdigit():
        return int(text)
    if text in _ALIASES:
        return _ALIASES[text]
    level = logging.getLevelName(text)
    return level if isinstance(level, int) else default


def get_log_level() -> int:
    """LOG_LEVEL > DEBUG 标志 > INFO"""
    level_str = os.environ.get("LOG_LEVEL", "")
    if level_str.strip():
        return parse_level(level_str)
    if os.environ.get("DEBUG", "").lower().strip() in ("1", "true", "yes", "on"):
        return logging.DEBUG
    return DEFAULT_LOG_LEVEL


def _file_handler(path: str, fmt: logging.Formatter) -> Optional[logging.Handler]:
    try:
        handler = logging.handlers.WatchedFileHandler(path)
    except OSError as e:
        sys.stderr.write(f"cannot open log file {path}: {e}\n")
        return None
    handler.setFormatter(fmt)
    return handler


def setup_logging(
    name: Optional[str] = None,
    level: Optional[int] = None,
    detailed: bool = False,
    force: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """配置 root logger（只生效一次，除非 force=True）

    Args:
        name: 返回的 logger 名
        level: 日志级别，None 时从环境变量读取
        detailed: 格式中包含文件名和行号
        force: 重新配置
        log_file: 额外日志文件，None 时读取 VPN_MANAGER_LOG_FILE
    """
    global _configured

    if _configured and not force:
        return logging.getLogger(name)

    if level is None:
        level = get_log_level()
    fmt = logging.Formatter(LOG_FORMAT_DETAILED if detailed else LOG_FORMAT, DATE_FORMAT)

    handlers = [logging.StreamHandler(sys.stderr)]
    handlers[0].setFormatter(fmt)
    log_file = log_file or os.environ.get("VPN_MANAGER_LOG_FILE")
    if log_file:
        handler = _file_handler(log_file, fmt)
        if handler is not None:
            handlers.append(handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    for lib_logger in NOISY_LOGGERS:
        logging.getLogger(lib_logger).setLevel(max(level, logging.WARNING))

    _configured = True
    logger = logging.getLogger(name)
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}")
    return logger


def get_logger(name: str) -> logging.Logger:
    if not _configured:
        setup_logging()
    return logging.getLogger(name)


def set_log_level(level: Union[str, int]) -> None:
    """运行时修改 root 级别（--debug）"""
    value = parse_level(level)
    logging.getLogger().setLevel(value)
    for lib_logger in NOISY_LOGGERS:
        logging.getLogger(lib_logger).setLevel(max(value, logging.WARNING))
    logging.getLogger("vpn-manager").info(f"Log level changed to: {logging.getLevelName(value)}")
