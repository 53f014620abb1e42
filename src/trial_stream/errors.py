"""trial-stream 异常类。

破坏生命周期的失败最终成为 ``StreamService.failure_cause()``；
单行解析问题（见 ``trial_stream.parsers.ParseError``）不会。
"""

from __future__ import annotations

__all__ = [
    "TrialStreamError",
    "ProcessStartError",
    "ServiceStateError",
    "WorkerExitError",
    "WorkerHangError",
    "WorkerKilledError",
    "AcceptTimeoutError",
]


class TrialStreamError(Exception):
    """trial-stream 基础异常。"""
    pass


class ProcessStartError(TrialStreamError):
    """worker 命令无法执行。

    Attributes:
        argv: 启动失败的命令行
    """

    def __init__(self, argv: list[str], message: str) -> None:
        self.argv = list(argv)
        super().__init__(f"Failed to start {argv[0] if argv else '<empty argv>'}: {message}")


class ServiceStateError(TrialStreamError):
    """当前生命周期状态不允许该操作。"""
    pass


class WorkerExitError(TrialStreamError):
    """worker 以非成功退出码结束。

    Attributes:
        exit_code: 进程退出码（负数 = 被信号终止）
    """

    def __init__(self, exit_code: int) -> None:
        self.exit_code = exit_code
        super().__init__(f"Worker failed to stop cleanly. Exit code: {exit_code}")


class WorkerHangError(TrialStreamError):
    """worker 关闭了输出流，但没有在宽限期内退出。

    Attributes:
        grace_period: 强制结束前等待的秒数
    """

    def __init__(self, grace_period: float) -> None:
        self.grace_period = grace_period
        super().__init__(
            f"Worker closed its output streams but did not exit within "
            f"{grace_period:g}s and was killed"
        )


class WorkerKilledError(TrialStreamError):
    """stop() 时 worker 仍在运行，只能强制结束。"""

    def __init__(self, pid: int | None) -> None:
        self.pid = pid
        super().__init__(f"Worker pid={pid} was still running when stopped and was terminated")


class AcceptTimeoutError(TimeoutError):
    """worker 未在限定时间内连接控制 socket。"""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Worker did not connect to the control socket within {timeout:g}s")
