"""Runtime module for worker process management.

This module provides isolated worker execution with reliable termination,
crash-safe cleanup hooks and the control socket acceptor.
"""

from __future__ import annotations

from .acceptor import SocketAcceptor
from .shutdown_hooks import ShutdownHookRegistrar, get_registrar
from .worker_process import ProcessSpec, WorkerProcess

__all__ = [
    "ProcessSpec",
    "WorkerProcess",
    "ShutdownHookRegistrar",
    "get_registrar",
    "SocketAcceptor",
]
