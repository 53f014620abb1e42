"""trial-stream 环境变量配置管理。

环境变量:
    TS_VERBOSE: 是否把 worker 的每一行及解析失败写入诊断输出
        - true/1/yes/on = 开启
        - false/0/no/off = 关闭 (默认)

    TS_GRACE_PERIOD: 输出流关闭（或调用 stop()）后等待 worker 自行退出的秒数，
        超时后强制结束
        - 默认 1.0 秒，限制在 0.01-600 之间

    TS_ACCEPT_TIMEOUT: 等待 worker 连接控制 socket 的秒数
        - 默认不限制（worker 退出或服务停止时放弃等待）
        - 0 / none = 不限制

    TS_QUEUE_CAPACITY: 缓冲的 stream item 上限
        - 默认 1000，最小 1

    TS_TERM_TIMEOUT: SIGTERM 后等待多少秒再发 SIGKILL (默认 2.0)

    TS_KILL_TIMEOUT: SIGKILL 后等待的秒数 (默认 1.0)

    TS_SUCCESS_EXIT_CODES: 视为正常结束的退出码，逗号分割
        - 默认 "0"

    TS_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_GRACE_PERIOD = 1.0
DEFAULT_ACCEPT_TIMEOUT: float | None = None
DEFAULT_QUEUE_CAPACITY = 1000
DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_seconds(
    value: str | None,
    default: float,
    minimum: float = 0.01,
    maximum: float = 600.0,
) -> float:
    """解析秒数，并限制在 [minimum, maximum] 范围内。"""
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    return max(minimum, min(seconds, maximum))


def _parse_accept_timeout(value: str | None) -> float | None:
    """解析 TS_ACCEPT_TIMEOUT。未设置、0 或 "none" 表示不限制。"""
    if value is None or not value.strip():
        return DEFAULT_ACCEPT_TIMEOUT
    value = value.strip().lower()
    if value in ("none", "off"):
        return None
    try:
        seconds = float(value)
    except ValueError:
        return DEFAULT_ACCEPT_TIMEOUT
    if seconds <= 0:
        return None
    return seconds


def _parse_capacity(value: str | None) -> int:
    if not value:
        return DEFAULT_QUEUE_CAPACITY
    try:
        return max(1, int(value))
    except ValueError:
        return DEFAULT_QUEUE_CAPACITY


def _parse_exit_codes(value: str | None) -> frozenset[int]:
    """解析逗号分割的退出码列表，忽略无效项。"""
    if not value or not value.strip():
        return frozenset({0})

    codes = set()
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            codes.add(int(item))
        except ValueError:
            continue

    return frozenset(codes) if codes else frozenset({0})


@dataclass
class Config:
    """trial-stream 配置。

    Attributes:
        verbose: 是否把 worker 输出和解析失败写入诊断输出
        grace_period: 等待 worker 自行退出的秒数
        accept_timeout: 等待控制连接的秒数（None = 不限制）
        queue_capacity: item 队列容量
        term_timeout: SIGTERM 后的等待秒数
        kill_timeout: SIGKILL 后的等待秒数
        success_exit_codes: 视为正常结束的退出码
        log_debug: 日志调试模式（输出到文件）
        log_file: 日志文件路径（log_debug=True 时自动生成）
    """

    verbose: bool = False
    grace_period: float = DEFAULT_GRACE_PERIOD
    accept_timeout: float | None = DEFAULT_ACCEPT_TIMEOUT
    queue_capacity: int = DEFAULT_QUEUE_CAPACITY
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    success_exit_codes: frozenset[int] = field(default_factory=lambda: frozenset({0}))
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        codes = ",".join(str(c) for c in sorted(self.success_exit_codes))
        return (
            f"Config(verbose={self.verbose}, "
            f"grace_period={self.grace_period}, "
            f"accept_timeout={self.accept_timeout}, "
            f"queue_capacity={self.queue_capacity}, "
            f"term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"success_exit_codes={codes}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """在临时目录下生成带时间戳的日志文件路径。"""
    log_dir = Path(tempfile.gettempdir()) / "trial-stream"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"ts_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("TS_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        verbose=_parse_bool(os.environ.get("TS_VERBOSE"), default=False),
        grace_period=_parse_seconds(
            os.environ.get("TS_GRACE_PERIOD"), DEFAULT_GRACE_PERIOD
        ),
        accept_timeout=_parse_accept_timeout(os.environ.get("TS_ACCEPT_TIMEOUT")),
        queue_capacity=_parse_capacity(os.environ.get("TS_QUEUE_CAPACITY")),
        term_timeout=_parse_seconds(
            os.environ.get("TS_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT
        ),
        kill_timeout=_parse_seconds(
            os.environ.get("TS_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT
        ),
        success_exit_codes=_parse_exit_codes(os.environ.get("TS_SUCCESS_EXIT_CODES")),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
