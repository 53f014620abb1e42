"""WorkerProcess tests.

Test coverage:
- Spawning with raw pipes
- ProcessStartError for commands that cannot run
- Shutdown hook lifecycle
- terminate()/kill() idempotence
"""

from __future__ import annotations

import os
import sys
import time
import uuid

import pytest

from trial_stream.errors import ProcessStartError, ServiceStateError
from trial_stream.runtime import ProcessSpec, ShutdownHookRegistrar, WorkerProcess

SLEEPER = [sys.executable, "-c", "import time; time.sleep(30)"]


def make_worker(argv, registrar: ShutdownHookRegistrar, **kwargs) -> WorkerProcess:
    return WorkerProcess(argv, uuid.uuid4(), registrar, **kwargs)


class TestProcessSpec:
    def test_of_sequence(self):
        spec = ProcessSpec.of(["echo", "hi"])
        assert spec.argv == ("echo", "hi")
        assert spec.cwd is None
        assert spec.env is None

    def test_of_spec_is_identity(self):
        spec = ProcessSpec(argv=("echo",))
        assert ProcessSpec.of(spec) is spec


class TestStart:
    """Spawning the worker."""

    def test_reads_stdout_and_stderr(self, registrar):
        worker = make_worker(
            [sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"],
            registrar,
        )
        worker.start()
        assert worker.started
        assert worker.pid is not None

        assert worker.stdout.read().strip() == b"out"
        assert worker.stderr.read().strip() == b"err"
        assert worker.wait(timeout=10) == 0
        assert worker.returncode == 0

    def test_env_is_passed(self, registrar):
        spec = ProcessSpec(
            argv=(sys.executable, "-c", "import os; print(os.environ['TS_PROBE'])"),
            env={**os.environ, "TS_PROBE": "probe-value"},
        )
        worker = make_worker(spec, registrar)
        worker.start()
        assert worker.stdout.read().strip() == b"probe-value"
        worker.wait(timeout=10)

    def test_missing_executable(self, registrar):
        worker = make_worker(["/nonexistent/trial-worker"], registrar)
        with pytest.raises(ProcessStartError) as exc_info:
            worker.start()
        assert exc_info.value.argv == ["/nonexistent/trial-worker"]
        assert not worker.started
        assert worker.hook_key not in registrar

    def test_empty_argv(self, registrar):
        with pytest.raises(ProcessStartError, match="empty"):
            make_worker([], registrar).start()

    def test_double_start(self, registrar):
        worker = make_worker([sys.executable, "-c", "pass"], registrar)
        worker.start()
        try:
            with pytest.raises(ServiceStateError):
                worker.start()
        finally:
            worker.wait(timeout=10)

    def test_streams_before_start(self, registrar):
        worker = make_worker(["true"], registrar)
        with pytest.raises(ServiceStateError):
            worker.stdout


class TestShutdownHook:
    """Hook registration follows the worker's life."""

    def test_hook_registered_while_alive(self, registrar):
        worker = make_worker(SLEEPER, registrar)
        worker.start()
        try:
            assert worker.hook_key in registrar
        finally:
            worker.kill()
        assert worker.hook_key not in registrar

    def test_hook_deregistered_on_exit(self, registrar):
        worker = make_worker([sys.executable, "-c", "pass"], registrar)
        worker.start()
        assert worker.wait(timeout=10) == 0
        assert worker.hook_key not in registrar

    def test_run_all_kills_worker(self, registrar):
        worker = make_worker(SLEEPER, registrar)
        worker.start()
        registrar.run_all()
        assert worker.poll() is not None

    def test_keys_are_unique_per_worker(self, registrar):
        a = make_worker(SLEEPER, registrar)
        b = make_worker(SLEEPER, registrar)
        assert a.hook_key != b.hook_key


class TestTermination:
    """terminate() and kill()."""

    def test_kill_running_worker(self, registrar):
        worker = make_worker(SLEEPER, registrar, kill_timeout=5.0)
        worker.start()
        worker.kill()
        assert worker.returncode is not None
        assert worker.returncode != 0

    def test_kill_is_idempotent(self, registrar):
        worker = make_worker(SLEEPER, registrar, kill_timeout=5.0)
        worker.kill()
        worker.start()
        worker.kill()
        worker.kill()
        assert worker.poll() is not None

    def test_terminate_running_worker(self, registrar):
        worker = make_worker(SLEEPER, registrar, term_timeout=5.0)
        worker.start()
        start = time.monotonic()
        worker.terminate()
        assert worker.returncode is not None
        assert time.monotonic() - start < 5.0

    def test_terminate_escalates_to_kill(self, registrar):
        ignores_term = [
            sys.executable,
            "-c",
            "import signal, sys, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n",
        ]
        worker = make_worker(ignores_term, registrar, term_timeout=0.3, kill_timeout=5.0)
        worker.start()
        assert worker.stdout.readline().strip() == b"ready"

        worker.terminate()
        assert worker.returncode is not None
        assert worker.hook_key not in registrar

    def test_terminate_exited_worker(self, registrar):
        worker = make_worker([sys.executable, "-c", "pass"], registrar)
        worker.start()
        worker.wait(timeout=10)
        worker.terminate()
        assert worker.returncode == 0

    def test_repr(self, registrar):
        worker = make_worker(["true"], registrar)
        assert "pid=None" in repr(worker)
