"""Worker stream 服务：生命周期状态机。

编排一次 worker 运行：

    start:  启动 worker -> 启动读取线程 -> 异步接受控制 socket
    run:    调用方用 read_item() 取出 item，用 write_line() 回写
    stop:   停止读取 -> 关闭 socket -> 必要时终止 worker

状态：
    NEW -> STARTING -> RUNNING -> STOPPING -> TERMINATED | FAILED

TERMINATED 与 FAILED 是互斥的终止状态。当且仅当状态为 FAILED 时存在失败原因。
所有状态转换都在同一把锁内完成，listener 也在锁内通知，并发的 stop() 与
自主退出检测只有一方能完成转换。
"""

from __future__ import annotations

import logging
import socket
import threading
from enum import Enum
from typing import Any, TextIO

from .config import get_config
from .errors import (
    ProcessStartError,
    ServiceStateError,
    WorkerExitError,
    WorkerHangError,
    WorkerKilledError,
)
from .items import StreamItem
from .multiplexer import StreamMultiplexer
from .parsers import LineParser
from .runtime.acceptor import SocketAcceptor
from .runtime.worker_process import WorkerProcess

__all__ = [
    "State",
    "ServiceListener",
    "StreamService",
]

logger = logging.getLogger(__name__)

# 输出流未关闭时 watcher 检查 worker 的间隔
_WATCH_INTERVAL = 0.05


class State(str, Enum):
    """服务生命周期状态。"""

    NEW = "new"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    TERMINATED = "terminated"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (State.TERMINATED, State.FAILED)


class ServiceListener:
    """生命周期回调，按需覆盖。

    回调在完成转换的线程上同步执行，此时持有服务锁，应尽量简短。
    """

    def starting(self) -> None:
        pass

    def running(self) -> None:
        pass

    def stopping(self, from_state: State) -> None:
        pass

    def terminated(self, from_state: State) -> None:
        pass

    def failed(self, from_state: State, cause: BaseException) -> None:
        pass


class StreamService:
    """监管一个 worker，并把它的输出暴露为 item 流。

    一次性使用：一个实例只运行一个 worker。

    Example:
        service = StreamService(worker, server_socket, 1, PlainTextParser(), config)
        service.start()
        while True:
            item = service.read_item(timeout=10)
            if item.is_eof:
                break
            if item.is_data:
                print(item.content)
        service.await_terminated(timeout=5)

    Attributes:
        worker: 被监管的 worker 进程
        trial_number: trial 编号，用于线程名和诊断输出
    """

    def __init__(
        self,
        worker: WorkerProcess,
        server_socket: socket.socket,
        trial_number: int,
        parser: LineParser,
        options: Any,
        stdout: TextIO | None = None,
        *,
        grace_period: float | None = None,
        accept_timeout: float | None = None,
        queue_capacity: int | None = None,
        success_exit_codes: frozenset[int] | None = None,
    ) -> None:
        config = get_config()
        self.worker = worker
        self.trial_number = trial_number
        self.grace_period = config.grace_period if grace_period is None else grace_period
        self.success_exit_codes = (
            config.success_exit_codes if success_exit_codes is None else success_exit_codes
        )

        self._acceptor = SocketAcceptor(
            server_socket,
            timeout=config.accept_timeout if accept_timeout is None else accept_timeout,
        )
        self._mux = StreamMultiplexer(
            parser,
            trial_number=trial_number,
            capacity=config.queue_capacity if queue_capacity is None else queue_capacity,
            verbose=bool(getattr(options, "verbose", False)),
            diagnostics=stdout,
        )

        self._lock = threading.RLock()
        self._terminal = threading.Condition(self._lock)
        self._state = State.NEW
        self._failure_cause: BaseException | None = None
        self._listeners: list[ServiceListener] = []

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    def state(self) -> State:
        with self._lock:
            return self._state

    def failure_cause(self) -> BaseException | None:
        """导致 FAILED 的错误，否则为 None。"""
        with self._lock:
            return self._failure_cause

    def add_listener(self, listener: ServiceListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def await_terminated(self, timeout: float | None = None) -> bool:
        """阻塞直到服务进入终止状态。

        Returns:
            是否在超时内进入终止状态
        """
        with self._terminal:
            return self._terminal.wait_for(lambda: self._state.is_terminal, timeout)

    def _notify(self, callback: str, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, callback)(*args)
            except Exception as e:
                logger.warning(f"Error in listener {callback}(): {e}")

    def _transition(self, expected: tuple[State, ...], target: State) -> bool:
        """当前状态属于 ``expected`` 时转换到 ``target``。"""
        with self._lock:
            if self._state not in expected:
                return False
            from_state = self._state
            self._state = target
            logger.debug(f"trial-{self.trial_number}: {from_state.value} -> {target.value}")
            if target is State.STARTING:
                self._notify("starting")
            elif target is State.RUNNING:
                self._notify("running")
            elif target is State.STOPPING:
                self._notify("stopping", from_state)
            return True

    def _settle(self, cause: BaseException | None) -> bool:
        """提交终止状态，只有第一次调用生效。"""
        with self._lock:
            if self._state.is_terminal:
                return False
            from_state = self._state
            if cause is None:
                self._state = State.TERMINATED
                logger.info(f"trial-{self.trial_number} terminated")
                self._notify("terminated", from_state)
            else:
                self._state = State.FAILED
                self._failure_cause = cause
                logger.warning(f"trial-{self.trial_number} failed: {cause}")
                self._notify("failed", from_state, cause)
            self._terminal.notify_all()
            return True

    # ------------------------------------------------------------------
    # 启动
    # ------------------------------------------------------------------

    def start(self) -> None:
        """启动 worker 并开始读取输出。

        Raises:
            ServiceStateError: 如果服务已经启动过
            ProcessStartError: 如果 worker 无法启动（抛出时服务已是 FAILED）
        """
        with self._lock:
            if not self._transition((State.NEW,), State.STARTING):
                raise ServiceStateError(
                    f"StreamService can only be started once (state={self._state.value})"
                )

            try:
                self.worker.start()
            except (ProcessStartError, ServiceStateError) as e:
                self._settle(e)
                raise

            self._mux.start_process_readers(self.worker.stdout, self.worker.stderr)
            self._spawn("accept", self._accept_control_socket)
            self._spawn("watcher", self._watch_worker)
            self._transition((State.STARTING,), State.RUNNING)

        logger.info(f"trial-{self.trial_number} started (pid={self.worker.pid})")

    def _spawn(self, role: str, target: Any) -> None:
        threading.Thread(
            target=target,
            daemon=True,
            name=f"trial-{self.trial_number}-{role}",
        ).start()

    def _accept_control_socket(self) -> None:
        try:
            conn = self._acceptor.accept(should_abandon=self._worker_gone)
        except OSError as e:
            logger.debug(f"trial-{self.trial_number}: control socket accept failed: {e}")
            self._fail(e)
            return

        if conn is None:
            self._mux.socket_abandoned()
            return

        with self._lock:
            if self._state.is_terminal or self._state is State.STOPPING:
                conn.close()
                self._mux.socket_abandoned()
                return
            self._mux.attach_socket(conn)

    def _worker_gone(self) -> bool:
        if self.state() in (State.STOPPING, State.TERMINATED, State.FAILED):
            return True
        return self.worker.poll() is not None

    # ------------------------------------------------------------------
    # 自主停止
    # ------------------------------------------------------------------

    def _watch_worker(self) -> None:
        """worker 输出结束时转为停止。"""
        closed = self._mux.process_streams_closed
        while not closed.wait(_WATCH_INTERVAL):
            if self.state() is not State.RUNNING:
                return
            if self.worker.poll() is not None:
                # 孙进程继承的输出流可能比 worker 活得更久
                if not closed.wait(self.grace_period):
                    logger.warning(
                        f"trial-{self.trial_number}: worker exited but its output "
                        f"streams are still open"
                    )
                break

        exit_code = self.worker.wait(self.grace_period)
        if not self._transition((State.RUNNING,), State.STOPPING):
            return

        if exit_code is None:
            logger.warning(
                f"trial-{self.trial_number}: worker pid={self.worker.pid} closed its "
                f"streams but did not exit within {self.grace_period:g}s, killing"
            )
            self.worker.kill()
            self._shut_down(WorkerHangError(self.grace_period))
            return

        self._shut_down(self._exit_cause(exit_code))

    def _exit_cause(self, exit_code: int) -> BaseException | None:
        if exit_code in self.success_exit_codes:
            return None
        return WorkerExitError(exit_code)

    def _shut_down(self, cause: BaseException | None) -> None:
        """释放 socket 并提交终止状态。调用前 worker 必须已退出。"""
        try:
            self._mux.close(join_timeout=self.grace_period)
        except OSError as e:
            logger.warning(f"trial-{self.trial_number}: error closing control socket: {e}")
            if cause is None:
                cause = e
        self._settle(cause)

    def _fail(self, cause: BaseException) -> None:
        """立即失败，然后释放 worker 和 socket。"""
        if not self._settle(cause):
            return
        self.worker.kill()
        try:
            self._mux.close()
        except OSError as e:
            logger.debug(f"trial-{self.trial_number}: error closing control socket: {e}")

    # ------------------------------------------------------------------
    # 停止
    # ------------------------------------------------------------------

    def stop(self, timeout: float | None = None) -> State:
        """停止服务。任何状态下都可以调用，可重复调用。

        Args:
            timeout: 其他线程正在停止服务时，等待终止状态的最长秒数

        Returns:
            停止后的状态（超时之外均为终止状态）
        """
        with self._lock:
            if self._state.is_terminal:
                return self._state
            if self._state is State.NEW:
                self._settle(None)
                return self._state
            won = self._transition((State.RUNNING, State.STARTING), State.STOPPING)

        if won:
            logger.info(f"trial-{self.trial_number}: stop requested")
            self._mux.stop_reading()
            self._mux.close_writer()

            cause = None
            exit_code = self.worker.wait(self.grace_period)
            if exit_code is None:
                self.worker.terminate()
                cause = WorkerKilledError(self.worker.pid)
            else:
                cause = self._exit_cause(exit_code)
            self._shut_down(cause)

        self.await_terminated(timeout)
        return self.state()

    # ------------------------------------------------------------------
    # 输出流
    # ------------------------------------------------------------------

    def read_item(self, timeout: float) -> StreamItem:
        """读取下一个 item，最多等待 ``timeout`` 秒。

        停止之后已排队的 DATA 可能被丢弃，但 EOF 一定会送达。

        Returns:
            DATA、EOF，超时内没有内容时为 TIMEOUT

        Raises:
            ServiceStateError: 如果服务从未启动
        """
        if self.state() is State.NEW:
            raise ServiceStateError("StreamService has not been started")
        return self._mux.read_item(timeout)

    def write_line(self, text: str, timeout: float | None = None) -> None:
        """通过控制 socket 向 worker 发送一行。

        等待 worker 连接，最多 ``timeout`` 秒，默认为 accept 超时。accept 超时为
        None 时一直等到连接结果确定（连接、worker 退出或服务停止）。
        worker 已离开或从未连接时为空操作。

        Raises:
            ServiceStateError: 如果服务从未启动，或已调用 close_writer()
        """
        if self.state() is State.NEW:
            raise ServiceStateError("StreamService has not been started")
        if timeout is None:
            timeout = self._acceptor.timeout
        self._mux.write_line(text, timeout)

    def close_writer(self) -> None:
        """半关闭控制 socket，worker 仍可发送。"""
        self._mux.close_writer()

    def __repr__(self) -> str:
        return (
            f"StreamService(trial={self.trial_number}, "
            f"state={self.state().value}, worker={self.worker!r})"
        )
