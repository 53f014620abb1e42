"""Stream 多路复用模块。

把 worker 的 stdout、stderr 和控制 socket 合并为一个有界、有序的
``StreamItem`` 队列，并提供写回 socket 的通道：
- 每个来源一个读取线程，每行都经过解析器
- 单个 ``queue.Queue`` 是所有生产者的唯一线性化点
- 队列满时生产者阻塞（背压）
- 两个进程输出流都关闭后恰好产生一个 EOF
- socket 关闭不会产生 EOF
"""

from __future__ import annotations

import logging
import queue
import socket
import threading
from typing import IO, Any, Callable, TextIO

from .errors import ServiceStateError
from .items import StreamItem, StreamSource
from .parsers import LineParser, ParseError

__all__ = ["StreamMultiplexer"]

logger = logging.getLogger(__name__)

# 阻塞的生产者以此间隔检查 stop_reading()
_PUT_POLL_INTERVAL = 0.1


def _decode_line(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r\n")


class StreamMultiplexer:
    """把 worker 的各个输出来源合并为一个有序的 item 队列。

    Example:
        ```python
        mux = StreamMultiplexer(parser, trial_number=1)
        mux.start_process_readers(worker.stdout, worker.stderr)
        mux.attach_socket(conn)
        item = mux.read_item(timeout=5)
        ```
    """

    def __init__(
        self,
        parser: LineParser,
        *,
        trial_number: int = 0,
        capacity: int = 1000,
        verbose: bool = False,
        diagnostics: TextIO | None = None,
    ) -> None:
        self.parser = parser
        self.trial_number = trial_number
        self.verbose = verbose
        self.diagnostics = diagnostics

        self._queue: queue.Queue[StreamItem] = queue.Queue(maxsize=capacity)
        self._reading_stopped = threading.Event()
        self._diagnostics_lock = threading.Lock()

        # 进程输出流
        self._streams_lock = threading.Lock()
        self._open_process_streams = 0
        self.process_streams_closed = threading.Event()

        # 控制 socket
        self._socket: socket.socket | None = None
        self._socket_settled = threading.Event()
        self._writer_lock = threading.Lock()
        self._writer_closed = False
        self._socket_closed = False

        self._threads: list[threading.Thread] = []
        self._socket_thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # 读取线程
    # ------------------------------------------------------------------

    def start_process_readers(self, stdout: IO[bytes], stderr: IO[bytes]) -> None:
        """开始读取 worker 的 stdout 和 stderr。"""
        with self._streams_lock:
            if self._open_process_streams or self.process_streams_closed.is_set():
                raise ServiceStateError("Process readers already started")
            self._open_process_streams = 2

        for source, pipe in ((StreamSource.STDOUT, stdout), (StreamSource.STDERR, stderr)):
            self._spawn(
                f"trial-{self.trial_number}-{source.value}",
                self._drain_pipe,
                source,
                pipe,
            )

    def attach_socket(self, conn: socket.socket) -> None:
        """开始读取已接受的控制连接。"""
        with self._writer_lock:
            if self._socket is not None:
                raise ServiceStateError("Control socket already attached")
            self._socket = conn
            if self._writer_closed:
                self._shutdown_socket(conn, socket.SHUT_WR)
        self._socket_settled.set()

        self._socket_thread = self._spawn(
            f"trial-{self.trial_number}-socket",
            self._drain_socket,
            conn,
        )

    def socket_abandoned(self) -> None:
        """记录 worker 不会再连接。"""
        self._socket_settled.set()

    def _spawn(self, name: str, target: Callable[..., None], *args: Any) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, daemon=True, name=name)
        self._threads.append(thread)
        thread.start()
        return thread

    def _drain_pipe(self, source: StreamSource, pipe: IO[bytes]) -> None:
        try:
            for raw in iter(pipe.readline, b""):
                if self._reading_stopped.is_set():
                    continue
                self._handle_line(source, _decode_line(raw))
        except (OSError, ValueError) as e:
            # ValueError: 管道在读取过程中被关闭
            logger.debug(f"Error reading worker {source.value}: {e}")
        finally:
            try:
                pipe.close()
            except OSError:
                pass
            self._process_stream_closed(source)

    def _drain_socket(self, conn: socket.socket) -> None:
        reader = conn.makefile("rb")
        try:
            for raw in iter(reader.readline, b""):
                if self._reading_stopped.is_set():
                    continue
                self._handle_line(StreamSource.SOCKET, _decode_line(raw))
        except (OSError, ValueError) as e:
            logger.debug(f"Control socket reader stopped: {e}")
        finally:
            try:
                reader.close()
            except OSError:
                pass
            logger.debug(f"Control socket closed by trial-{self.trial_number}")

    def _handle_line(self, source: StreamSource, line: str) -> None:
        if self.verbose:
            self._diagnose(f"[trial-{self.trial_number}] {line}")
        try:
            message = self.parser.parse(line)
        except ParseError as e:
            logger.debug(f"Unparseable {source.value} line from trial-{self.trial_number}: {e}")
            if self.verbose:
                self._diagnose(f"[trial-{self.trial_number}] could not parse line: {e.reason}")
            return
        self._offer(StreamItem.data(str(message), message=message, source=source))

    def _process_stream_closed(self, source: StreamSource) -> None:
        with self._streams_lock:
            self._open_process_streams -= 1
            last = self._open_process_streams == 0
        logger.debug(f"Worker {source.value} closed (trial-{self.trial_number})")
        if last:
            self._offer(StreamItem.eof())
            self.process_streams_closed.set()

    def _offer(self, item: StreamItem) -> bool:
        """入队；队列满时阻塞，直到停止读取。

        停止读取后 DATA 被丢弃，EOF 仍然入队。
        """
        while not self._reading_stopped.is_set():
            try:
                self._queue.put(item, timeout=_PUT_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        if item.is_eof:
            self._force_put(item)
            return True
        logger.debug(f"Dropped {item!r}, reading stopped")
        return False

    def _force_put(self, item: StreamItem) -> None:
        """不阻塞地入队，队列满时丢弃最旧的 item。"""
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                pass
            try:
                evicted = self._queue.get_nowait()
            except queue.Empty:
                continue
            logger.debug(f"Evicted {evicted!r} to make room for {item!r}")

    def _diagnose(self, text: str) -> None:
        if self.diagnostics is None:
            return
        with self._diagnostics_lock:
            print(text, file=self.diagnostics, flush=True)

    # ------------------------------------------------------------------
    # 消费端
    # ------------------------------------------------------------------

    def read_item(self, timeout: float) -> StreamItem:
        """取出下一个 item；超时内没有内容则返回 TIMEOUT。"""
        try:
            return self._queue.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return StreamItem.timeout()

    def write_line(self, text: str, timeout: float | None = None) -> None:
        """向控制 socket 写入 ``text`` 加换行。

        最多等待 ``timeout`` 秒让 worker 连接（None = 直到连接结果确定）。
        worker 从未连接或已离开时为空操作。

        Raises:
            ServiceStateError: close_writer() 之后调用，或 worker 在超时内未连接
        """
        if not self._socket_settled.wait(timeout):
            raise ServiceStateError("Worker has not connected to the control socket")

        with self._writer_lock:
            if self._writer_closed:
                raise ServiceStateError("Control socket writer already closed")
            if self._socket is None or self._socket_closed:
                logger.debug(f"Dropping line for trial-{self.trial_number}, worker not connected")
                return
            try:
                self._socket.sendall(f"{text}\n".encode("utf-8"))
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.debug(f"Worker stopped reading the control socket: {e}")

    def close_writer(self) -> None:
        """半关闭控制 socket 的写方向。幂等。"""
        with self._writer_lock:
            if self._writer_closed:
                return
            self._writer_closed = True
            if self._socket is not None and not self._socket_closed:
                self._shutdown_socket(self._socket, socket.SHUT_WR)

    def _shutdown_socket(self, conn: socket.socket, how: int) -> None:
        try:
            conn.shutdown(how)
        except OSError as e:
            # ENOTCONN: 对端已经离开
            logger.debug(f"Control socket shutdown({how}) failed: {e}")

    # ------------------------------------------------------------------
    # 清理
    # ------------------------------------------------------------------

    def stop_reading(self) -> None:
        """丢弃之后的所有 DATA，并释放阻塞的生产者。"""
        self._reading_stopped.set()

    def close(self, join_timeout: float = 0.0) -> None:
        """关闭控制 socket。

        关闭前 socket 读取线程最多有 ``join_timeout`` 秒读完 worker 已发送的内容。

        Raises:
            OSError: 关闭 socket 失败
        """
        self._socket_settled.set()
        thread = self._socket_thread
        if thread is not None and join_timeout > 0:
            thread.join(join_timeout)

        with self._writer_lock:
            conn = self._socket
            if conn is None or self._socket_closed:
                return
            self._socket_closed = True
            self._shutdown_socket(conn, socket.SHUT_RDWR)
            conn.close()
        logger.debug(f"Control socket released (trial-{self.trial_number})")

    @property
    def socket_connected(self) -> bool:
        return self._socket is not None

    def pending(self) -> int:
        """队列中 item 的近似数量。"""
        return self._queue.qsize()
