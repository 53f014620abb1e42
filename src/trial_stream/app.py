"""trial-stream 命令行运行器：从命令行监管一个 worker。

Usage:
    trial-stream [--trial N] [--host HOST] [--port PORT] [--json] -- CMD [ARGS...]

控制 socket 在 worker 启动前绑定。端口通过 TRIAL_STREAM_PORT 传给 worker，
并替换命令中的 ``{port}``。worker 正常终止时退出码为 0，否则为 1。
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
import sys
import uuid
from typing import Sequence

from .config import Config, get_config
from .errors import ProcessStartError
from .parsers import JsonLineParser, LineParser, PlainTextParser
from .runtime import ProcessSpec, WorkerProcess, get_registrar
from .service import State, StreamService

__all__ = ["main", "run_trial"]

logger = logging.getLogger(__name__)

PORT_ENV = "TRIAL_STREAM_PORT"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trial-stream",
        description="Run one worker and stream its stdout, stderr and control socket output",
    )
    parser.add_argument("--trial", type=int, default=0, help="Trial number (default: 0)")
    parser.add_argument("--host", default="127.0.0.1", help="Control socket host")
    parser.add_argument("--port", type=int, default=0, help="Control socket port (0 = ephemeral)")
    parser.add_argument("--json", action="store_true", help="Parse worker lines as JSON objects")
    parser.add_argument(
        "--read-timeout",
        type=float,
        default=10.0,
        help="Seconds between progress checks while waiting for output",
    )
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Worker command line")
    return parser


def run_trial(
    argv: Sequence[str],
    *,
    trial_number: int = 0,
    host: str = "127.0.0.1",
    port: int = 0,
    line_parser: LineParser | None = None,
    read_timeout: float = 10.0,
    config: Config | None = None,
    out=None,
) -> State:
    """运行一个 worker 直到结束，打印每个 DATA item。

    Returns:
        服务的终止状态
    """
    config = config or get_config()
    out = out or sys.stdout
    registrar = get_registrar()

    with socket.create_server((host, port)) as server_socket:
        bound_port = server_socket.getsockname()[1]
        command = [arg.replace("{port}", str(bound_port)) for arg in argv]
        env = dict(os.environ)
        env[PORT_ENV] = str(bound_port)

        worker = WorkerProcess(
            ProcessSpec(argv=tuple(command), env=env),
            uuid.uuid4(),
            registrar,
            term_timeout=config.term_timeout,
            kill_timeout=config.kill_timeout,
        )
        service = StreamService(
            worker,
            server_socket,
            trial_number,
            line_parser or PlainTextParser(),
            config,
            sys.stderr,
        )

        try:
            service.start()
        except ProcessStartError as e:
            logger.error(str(e))
            return service.state()

        try:
            while True:
                item = service.read_item(read_timeout)
                if item.is_data:
                    print(item.content, file=out, flush=True)
                elif item.is_eof:
                    break
                elif service.state().is_terminal:
                    break
                else:
                    logger.debug(f"trial-{trial_number}: no output for {read_timeout:g}s")

            service.await_terminated(config.grace_period + config.term_timeout + config.kill_timeout)
            # socket 输出可能晚于进程输出流到达
            while True:
                item = service.read_item(0)
                if not item.is_data:
                    break
                print(item.content, file=out, flush=True)
        finally:
            state = service.stop()

    if state is State.FAILED:
        logger.error(f"trial-{trial_number} failed: {service.failure_cause()}")
    return state


def _configure_logging(config: Config) -> None:
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 根 logger（第三方库）保持 WARNING
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    logging.getLogger("trial_stream").setLevel(log_level)


def main(args: Sequence[str] | None = None) -> int:
    """程序入口。"""
    config = get_config()
    _configure_logging(config)

    options = _build_parser().parse_args(args)
    command = list(options.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        _build_parser().error("a worker command is required")

    if config.log_debug:
        logger.info(f"Debug log: {config.log_file}")

    get_registrar().install_signal_handlers()

    state = run_trial(
        command,
        trial_number=options.trial,
        host=options.host,
        port=options.port,
        line_parser=JsonLineParser() if options.json else None,
        read_timeout=options.read_timeout,
        config=config,
    )
    return 0 if state is State.TERMINATED else 1


if __name__ == "__main__":
    sys.exit(main())
