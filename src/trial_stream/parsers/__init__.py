"""stream multiplexer 使用的行解析器。"""

from __future__ import annotations

from .base import LineParser, ParseError, PlainTextParser
from .json_lines import JsonLineParser, WorkerMessage

__all__ = [
    "LineParser",
    "ParseError",
    "PlainTextParser",
    "JsonLineParser",
    "WorkerMessage",
]
