"""Control socket acceptor.

Accepts exactly one inbound connection from the worker on a listening socket
that the caller created and bound. The accept is polled in short slices so it
can be abandoned when the worker dies before connecting, and is bounded by an
optional timeout. It never hangs forever.
"""

from __future__ import annotations

import errno
import logging
import socket
import time
from typing import Callable

from ..errors import AcceptTimeoutError

__all__ = ["SocketAcceptor"]

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.05


class SocketAcceptor:
    """Single-shot acceptor for the worker's control connection.

    Failures are raised as socket-layer errors (``OSError`` and subclasses) so
    callers can tell them apart from worker exit failures.

    Example:
        acceptor = SocketAcceptor(server_socket, timeout=30)
        conn = acceptor.accept(should_abandon=lambda: worker.poll() is not None)
        if conn is None:
            ...  # worker went away without connecting
    """

    def __init__(
        self,
        server_socket: socket.socket,
        *,
        timeout: float | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.server_socket = server_socket
        self.timeout = timeout
        self.poll_interval = poll_interval

    def accept(
        self,
        should_abandon: Callable[[], bool] | None = None,
    ) -> socket.socket | None:
        """Wait for the worker to connect.

        Args:
            should_abandon: Polled between slices; True gives up quietly

        Returns:
            The connected socket (blocking mode), or None if abandoned

        Raises:
            OSError: If the listening socket is closed or accept fails
            AcceptTimeoutError: If the timeout elapsed without a connection
        """
        server = self.server_socket
        if server.fileno() == -1:
            raise OSError(errno.EBADF, "Listening socket is closed")

        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        original_timeout = server.gettimeout()
        server.settimeout(self.poll_interval)
        try:
            while True:
                try:
                    conn, address = server.accept()
                except socket.timeout:
                    if should_abandon is not None and should_abandon():
                        logger.debug("Control socket accept abandoned")
                        return None
                    if deadline is not None and time.monotonic() >= deadline:
                        raise AcceptTimeoutError(self.timeout or 0.0) from None
                    continue

                conn.setblocking(True)
                logger.debug(f"Accepted control connection from {address}")
                return conn
        finally:
            if server.fileno() != -1:
                server.settimeout(original_timeout)
