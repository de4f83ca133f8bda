"""eye3d 日志工具（标准库 logging）。

约定：
    - 库内各组件都接受可选的 `logger` 参数；不传时使用 `default_logger()`，
      即名为 "eye3d" 的 logger，控制台只输出 WARNING 及以上。
    - 日志格式带线程名：Async 模式下长期模型在后台线程 "eye3d-refit" 中拟合，
      便于区分逐帧日志与后台日志。
    - 同名 logger 只配置一次；重复调用 `get_logger` 直接返回已配置的实例。
"""

from __future__ import annotations

import logging
from pathlib import Path

DEFAULT_LOGGER_NAME = "eye3d"

_CONFIGURED_FLAG = "_eye3d_configured"
_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s][%(threadName)s] %(message)s"
_DATEFMT = "%H:%M:%S"


def _to_level(level: str | int) -> int:
    """把 "debug"/"INFO"/10 等写法统一成 logging 级别；无法识别时回退到 INFO。"""

    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    return value if isinstance(value, int) else logging.INFO


def _make_handler(handler: logging.Handler, level: str | int) -> logging.Handler:
    handler.setLevel(_to_level(level))
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT))
    return handler


def get_logger(
    name: str,
    *,
    console_output: bool = True,
    file_output: bool = False,
    console_level: str | int = "INFO",
    file_level: str | int = "DEBUG",
    log_file: str | Path | None = None,
) -> logging.Logger:
    """获取（必要时配置）一个 logger。

    Args:
        name: logger 名称，建议以 "eye3d" 为前缀。
        console_output: 是否输出到 stderr。
        file_output: 是否同时写文件。
        console_level: 控制台级别。
        file_level: 文件级别。
        log_file: 日志文件路径；为 None 时写到当前目录下的 `<name>.log`。

    Returns:
        logging.Logger: 已配置的 logger（不向 root 传播）。
    """

    logger = logging.getLogger(name)
    if getattr(logger, _CONFIGURED_FLAG, False):
        return logger

    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    if console_output:
        logger.addHandler(_make_handler(logging.StreamHandler(), console_level))
    if file_output:
        path = Path(log_file) if log_file is not None else Path(f"{name}.log")
        logger.addHandler(_make_handler(logging.FileHandler(path, encoding="utf-8"), file_level))

    setattr(logger, _CONFIGURED_FLAG, True)
    return logger


def default_logger() -> logging.Logger:
    """组件未显式传入 logger 时使用的共享 logger。"""

    return get_logger(DEFAULT_LOGGER_NAME, console_level="WARNING")


__all__ = ["DEFAULT_LOGGER_NAME", "default_logger", "get_logger"]
