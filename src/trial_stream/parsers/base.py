"""行解析器接口。

解析器把 worker 输出的一行转换为消息对象。multiplexer 用 ``str()`` 把
解析成功的消息渲染为 DATA item，``ParseError`` 只影响当前行，不会中断读取。
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

__all__ = [
    "LineParser",
    "ParseError",
    "PlainTextParser",
]


class ParseError(ValueError):
    """无法把一行转换为消息。

    Attributes:
        line: 出错的行
        reason: 问题的简短描述
    """

    def __init__(self, line: str, reason: str) -> None:
        self.line = line
        self.reason = reason
        super().__init__(f"Could not parse {line!r}: {reason}")


@runtime_checkable
class LineParser(Protocol):
    """把原始文本转换为领域消息。"""

    def parse(self, text: str) -> Any:
        """解析一行。

        Raises:
            ParseError: 如果该行不是有效消息
        """
        ...


class PlainTextParser:
    """恒等解析器：每一行就是它自己的消息。"""

    def parse(self, text: str) -> str:
        return text
