"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import os
import socket
import sys
from pathlib import Path
from unittest import mock

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 到 Python 路径（开发环境）
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_WORKER_PATH = FIXTURES_DIR / "fake_worker.py"

from trial_stream.config import reload_config  # noqa: E402
from trial_stream.runtime import ShutdownHookRegistrar  # noqa: E402


@pytest.fixture(autouse=True)
def clean_env():
    """每个测试都在没有外部 TS_* 变量的环境中运行。"""
    env = {k: v for k, v in os.environ.items() if not k.startswith("TS_")}
    with mock.patch.dict(os.environ, env, clear=True):
        reload_config()
        yield
    reload_config()


@pytest.fixture
def server_socket():
    """监听本机临时端口的 socket。"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock
    sock.close()


@pytest.fixture
def registrar() -> ShutdownHookRegistrar:
    """不触碰真实 atexit 机制的注册表。"""
    registrar = ShutdownHookRegistrar(use_atexit=False)
    yield registrar
    registrar.run_all()


@pytest.fixture
def fake_worker_argv() -> list[str]:
    """用当前解释器运行 fake worker 的命令前缀。"""
    return [sys.executable, str(FAKE_WORKER_PATH)]
