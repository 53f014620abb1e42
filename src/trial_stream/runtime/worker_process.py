"""Worker process with isolation and reliable termination.

This module provides:
- Worker spawning in its own session/process group
- Raw stdout/stderr pipes for the stream multiplexer
- Reliable termination (SIGTERM -> timeout -> SIGKILL) of the whole group
- Crash safety through a shutdown hook registered while the worker is alive

Key design points:
- POSIX: start_new_session=True so the kill reaches grandchildren too
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- The shutdown hook is deregistered exactly once, when the exit is observed
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

from ..errors import ProcessStartError, ServiceStateError
from .shutdown_hooks import ShutdownHookRegistrar

__all__ = [
    "IS_WINDOWS",
    "ProcessSpec",
    "WorkerProcess",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a worker process.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process (None = inherit)
        env: Environment variables (None = inherit parent)
    """

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None

    @classmethod
    def of(cls, argv: Sequence[str] | "ProcessSpec") -> "ProcessSpec":
        if isinstance(argv, ProcessSpec):
            return argv
        return cls(argv=tuple(argv))


class WorkerProcess:
    """A single-use worker process.

    Example:
        worker = WorkerProcess(["bash", "-c", "echo hi"], uuid.uuid4(), registrar)
        worker.start()
        for line in worker.stdout:
            ...
        exit_code = worker.wait(timeout=5)
    """

    def __init__(
        self,
        spec: ProcessSpec | Sequence[str],
        worker_id: uuid.UUID,
        registrar: ShutdownHookRegistrar,
        *,
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> None:
        self.spec = ProcessSpec.of(spec)
        self.worker_id = worker_id
        self.registrar = registrar
        self.term_timeout = term_timeout
        self.kill_timeout = kill_timeout

        self._process: subprocess.Popen[bytes] | None = None
        self._lock = threading.Lock()
        self._hook_registered = False

    @property
    def hook_key(self) -> str:
        """Shutdown hook key, unique per worker instance."""
        return f"worker-{self.worker_id}"

    def start(self) -> None:
        """Spawn the worker.

        Raises:
            ProcessStartError: If the command cannot be executed
            ServiceStateError: If the worker was already started
        """
        with self._lock:
            if self._process is not None:
                raise ServiceStateError(f"Worker {self.worker_id} already started")

            argv = list(self.spec.argv)
            if not argv:
                raise ProcessStartError(argv, "empty command line")

            try:
                self._process = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    cwd=self.spec.cwd,
                    **self._build_popen_kwargs(),
                )
            except (OSError, ValueError) as e:
                raise ProcessStartError(argv, str(e)) from e

            self.registrar.register(self.hook_key, self.kill)
            self._hook_registered = True

        logger.debug(
            f"Started worker pid={self._process.pid} "
            f"argv={argv[0]} id={self.worker_id}"
        )

    def _build_popen_kwargs(self) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs."""
        kwargs: dict[str, Any] = {}

        if self.spec.env is not None:
            kwargs["env"] = dict(self.spec.env)

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        return kwargs

    @property
    def started(self) -> bool:
        return self._process is not None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def stdout(self) -> IO[bytes]:
        return self._require_process().stdout  # type: ignore[return-value]

    @property
    def stderr(self) -> IO[bytes]:
        return self._require_process().stderr  # type: ignore[return-value]

    def _require_process(self) -> subprocess.Popen[bytes]:
        if self._process is None:
            raise ServiceStateError(f"Worker {self.worker_id} not started")
        return self._process

    def poll(self) -> int | None:
        """Return the exit code, or None while the worker is running."""
        exit_code = self._require_process().poll()
        if exit_code is not None:
            self._on_exit()
        return exit_code

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for the worker to exit.

        Returns:
            Exit code, or None if the timeout elapsed first
        """
        try:
            exit_code = self._require_process().wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        self._on_exit()
        return exit_code

    def _on_exit(self) -> None:
        with self._lock:
            if not self._hook_registered:
                return
            self._hook_registered = False
        self.registrar.deregister(self.hook_key)
        logger.debug(f"Worker exited pid={self.pid} returncode={self.returncode}")

    def kill(self) -> None:
        """Force-kill the worker's process group.

        Idempotent: a no-op before start() and after the worker exited.
        """
        process = self._process
        if process is None or process.poll() is not None:
            if process is not None:
                self._on_exit()
            return

        pid = process.pid
        logger.debug(f"Force killing worker pid={pid}")
        try:
            if IS_WINDOWS:
                process.kill()
            else:
                self._posix_signal(process, signal.SIGKILL)
        except ProcessLookupError:
            logger.debug(f"Worker already exited pid={pid}")

        if self.wait(timeout=self.kill_timeout) is None:
            logger.warning(f"Worker did not exit after kill pid={pid}")

    def terminate(self) -> None:
        """Terminate gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM to the process group (CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, kill()
        """
        process = self._process
        if process is None or process.poll() is not None:
            if process is not None:
                self._on_exit()
            return

        pid = process.pid
        logger.debug(f"Terminating worker pid={pid}")
        try:
            if IS_WINDOWS:
                os.kill(pid, signal.CTRL_BREAK_EVENT)
            else:
                self._posix_signal(process, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"Graceful termination failed, falling back to kill: {e}")

        if self.wait(timeout=self.term_timeout) is not None:
            logger.debug(
                f"Worker terminated gracefully pid={pid} "
                f"returncode={process.returncode}"
            )
            return

        self.kill()

    def _posix_signal(self, process: subprocess.Popen[bytes], signum: int) -> None:
        """Send a signal to the worker's process group on POSIX systems."""
        try:
            # Same as pid because of start_new_session
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signum)
            logger.debug(f"Sent {signal.Signals(signum).name} to process group pgid={pgid}")
        except ProcessLookupError:
            raise
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            process.send_signal(signum)

    def __repr__(self) -> str:
        return (
            f"WorkerProcess(id={str(self.worker_id)[:8]}..., "
            f"pid={self.pid}, returncode={self.returncode})"
        )
