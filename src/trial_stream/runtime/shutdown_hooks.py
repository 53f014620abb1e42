"""进程级 shutdown hook 注册表。

worker 启动时登记清理动作，避免 supervisor 异常退出时遗留孤儿进程。
确认 worker 退出后立即注销，因此不会重复 kill，也不会 kill 被复用的 pid。

hook 的运行时机：
- 解释器退出时（atexit，首次登记时才安装）
- 调用 install_signal_handlers() 后收到 SIGTERM/SIGHUP 时
"""

from __future__ import annotations

import atexit
import logging
import os
import signal
import sys
import threading
from typing import Any, Callable, Dict

__all__ = ["ShutdownHookRegistrar", "get_registrar"]

logger = logging.getLogger(__name__)


class ShutdownHookRegistrar:
    """以唯一字符串为键的清理动作注册表。

    线程安全：worker 在读取线程和监视线程中登记和注销。

    Example:
        registrar = ShutdownHookRegistrar()
        registrar.register("worker-1234", worker.kill)
        ...
        registrar.deregister("worker-1234")
    """

    def __init__(self, *, use_atexit: bool = True) -> None:
        self._hooks: Dict[str, Callable[[], Any]] = {}
        self._lock = threading.Lock()
        self._use_atexit = use_atexit
        self._atexit_installed = False
        self._previous_handlers: Dict[int, Any] = {}

    def register(self, key: str, action: Callable[[], Any]) -> None:
        """登记清理动作。

        Args:
            key: 唯一键（每个 worker 实例一个）
            action: shutdown 时调用的无参 callable

        Raises:
            ValueError: 如果 key 已登记
        """
        with self._lock:
            if key in self._hooks:
                raise ValueError(f"Shutdown hook {key} already registered")
            self._hooks[key] = action
            if self._use_atexit and not self._atexit_installed:
                atexit.register(self.run_all)
                self._atexit_installed = True
        logger.debug(f"Registered shutdown hook: {key}")

    def deregister(self, key: str) -> bool:
        """注销清理动作。

        Returns:
            key 是否曾被登记
        """
        with self._lock:
            removed = self._hooks.pop(key, None) is not None
        if removed:
            logger.debug(f"Deregistered shutdown hook: {key}")
        return removed

    def run_all(self) -> int:
        """运行并清空所有已登记的 hook。

        hook 出错只记录日志，其余 hook 继续运行。

        Returns:
            运行的 hook 数量
        """
        with self._lock:
            hooks = list(self._hooks.items())
            self._hooks.clear()

        for key, action in hooks:
            try:
                action()
            except Exception as e:
                logger.warning(f"Error in shutdown hook {key}: {e}")

        if hooks:
            logger.debug(f"Ran {len(hooks)} shutdown hook(s)")
        return len(hooks)

    def install_signal_handlers(
        self,
        signals: tuple[int, ...] | None = None,
    ) -> None:
        """supervisor 被信号终止时运行 hook。

        hook 运行后恢复原来的处理方式并重新投递信号，supervisor 仍然会终止。
        必须在主线程调用。
        """
        if signals is None:
            if sys.platform == "win32":
                signals = (signal.SIGTERM,)
            else:
                signals = (signal.SIGTERM, signal.SIGHUP)

        for signum in signals:
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)
        logger.debug(f"Shutdown signal handlers installed: {[signal.Signals(s).name for s in signals]}")

    def _handle_signal(self, signum: int, frame: Any) -> None:
        logger.info(f"{signal.Signals(signum).name} received, running shutdown hooks")
        self.run_all()

        previous = self._previous_handlers.get(signum, signal.SIG_DFL)
        if callable(previous):
            previous(signum, frame)
            return
        if previous is None:
            previous = signal.SIG_DFL
        signal.signal(signum, previous)
        os.kill(os.getpid(), signum)

    def __len__(self) -> int:
        with self._lock:
            return len(self._hooks)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._hooks


# 默认的进程级注册表（延迟创建）
_registrar: ShutdownHookRegistrar | None = None
_registrar_lock = threading.Lock()


def get_registrar() -> ShutdownHookRegistrar:
    """返回默认的进程级注册表。"""
    global _registrar
    with _registrar_lock:
        if _registrar is None:
            _registrar = ShutdownHookRegistrar()
        return _registrar
