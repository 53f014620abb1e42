"""命令行运行器测试。"""

from __future__ import annotations

import io
import json
from unittest import mock

import pytest

from trial_stream.app import main, run_trial
from trial_stream.parsers import JsonLineParser
from trial_stream.runtime import ShutdownHookRegistrar
from trial_stream.service import State


@pytest.fixture
def no_signal_handlers():
    with mock.patch.object(ShutdownHookRegistrar, "install_signal_handlers") as install:
        yield install


@pytest.mark.integration
class TestRunTrial:
    """用 fake worker 端到端测试 run_trial()。"""

    def test_prints_all_output(self, fake_worker_argv):
        out = io.StringIO()
        state = run_trial(fake_worker_argv + ["--events", "2"], trial_number=1, out=out)

        assert state is State.TERMINATED
        events = [json.loads(line) for line in out.getvalue().splitlines()]
        assert sorted(e["type"] for e in events) == ["hello", "measurement", "measurement"]

    def test_port_placeholder(self, fake_worker_argv):
        """命令中的 {port} 被替换为实际端口。"""
        out = io.StringIO()
        state = run_trial(
            fake_worker_argv + ["--port", "{port}", "--events", "0"],
            out=out,
            line_parser=JsonLineParser(),
        )
        assert state is State.TERMINATED
        assert out.getvalue().strip() == '{"type": "hello"}'

    def test_failed_worker(self, fake_worker_argv):
        out = io.StringIO()
        state = run_trial(fake_worker_argv + ["--events", "0", "--exit-code", "2"], out=out)
        assert state is State.FAILED

    def test_unlaunchable_worker(self):
        assert run_trial(["/nonexistent/trial-worker"], out=io.StringIO()) is State.FAILED


@pytest.mark.integration
class TestMain:
    """测试 main() 的退出码和参数处理。"""

    def test_success(self, fake_worker_argv, capsys, no_signal_handlers):
        code = main(["--trial", "5", "--json", "--", *fake_worker_argv, "--events", "1"])
        assert code == 0
        no_signal_handlers.assert_called_once()

        lines = capsys.readouterr().out.splitlines()
        assert sorted(json.loads(line)["type"] for line in lines) == ["hello", "measurement"]

    def test_failure(self, fake_worker_argv, no_signal_handlers):
        assert main(["--", *fake_worker_argv, "--events", "0", "--exit-code", "3"]) == 1

    def test_missing_command(self, no_signal_handlers):
        """缺少 worker 命令时报参数错误。"""
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2
