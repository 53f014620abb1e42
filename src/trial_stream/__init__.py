"""trial-stream - 基准测试 trial 的 worker 输出流。

监管一个 worker 进程，把它的 stdout、stderr 和控制 socket 合并为一个有序的
item 流，并以状态机跟踪 worker 的生命周期。

环境变量：
    TS_VERBOSE: 把 worker 输出回显到诊断输出（默认 false）
    TS_GRACE_PERIOD: 等待 worker 自然退出的秒数（默认 1.0）
    TS_ACCEPT_TIMEOUT: 等待控制连接的秒数（默认不限，直到 worker 退出）

Usage:
    trial-stream -- CMD [ARGS...]
"""

__version__ = "0.1.0"

from .errors import (
    AcceptTimeoutError,
    ProcessStartError,
    ServiceStateError,
    TrialStreamError,
    WorkerExitError,
    WorkerHangError,
    WorkerKilledError,
)
from .items import ItemKind, StreamItem, StreamSource
from .runtime import ProcessSpec, ShutdownHookRegistrar, WorkerProcess, get_registrar
from .service import ServiceListener, State, StreamService

__all__ = [
    "__version__",
    "ItemKind",
    "StreamItem",
    "StreamSource",
    "ProcessSpec",
    "ShutdownHookRegistrar",
    "WorkerProcess",
    "get_registrar",
    "ServiceListener",
    "State",
    "StreamService",
    "TrialStreamError",
    "ProcessStartError",
    "ServiceStateError",
    "WorkerExitError",
    "WorkerHangError",
    "WorkerKilledError",
    "AcceptTimeoutError",
]
