"""``StreamService.read_item`` 返回的 stream item。

每个观察到的 worker 输出单元属于以下三种之一：
- DATA: 一行解析后的内容，来自 stdout、stderr 或控制 socket
- EOF: 进程的两个输出流都已关闭（每次运行只出现一次）
- TIMEOUT: 调用方的读取超时内没有新内容
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

__all__ = [
    "ItemKind",
    "StreamSource",
    "StreamItem",
]


class ItemKind(str, Enum):
    """stream item 类型。"""

    DATA = "data"
    EOF = "eof"
    TIMEOUT = "timeout"


class StreamSource(str, Enum):
    """DATA item 的来源。"""

    STDOUT = "stdout"
    STDERR = "stderr"
    SOCKET = "socket"


@dataclass(frozen=True)
class StreamItem:
    """不可变的 stream item。

    Attributes:
        kind: item 类型
        content: 解析后消息的文本形式（仅 DATA）
        message: 生成 content 的消息对象（仅 DATA）
        source: 读取该行的流（仅 DATA）
    """

    kind: ItemKind
    content: str | None = None
    message: Any = None
    source: StreamSource | None = None

    @classmethod
    def data(
        cls,
        content: str,
        message: Any = None,
        source: StreamSource | None = None,
    ) -> "StreamItem":
        """创建 DATA item。``message`` 默认为 content 本身。"""
        return cls(
            kind=ItemKind.DATA,
            content=content,
            message=content if message is None else message,
            source=source,
        )

    @classmethod
    def eof(cls) -> "StreamItem":
        return _EOF

    @classmethod
    def timeout(cls) -> "StreamItem":
        return _TIMEOUT

    @property
    def is_data(self) -> bool:
        return self.kind is ItemKind.DATA

    @property
    def is_eof(self) -> bool:
        return self.kind is ItemKind.EOF

    @property
    def is_timeout(self) -> bool:
        return self.kind is ItemKind.TIMEOUT

    def text(self) -> str:
        """返回 DATA item 的内容。

        Raises:
            ValueError: 如果不是 DATA item
        """
        if self.kind is not ItemKind.DATA or self.content is None:
            raise ValueError(f"{self.kind.value} item has no content")
        return self.content

    def __repr__(self) -> str:
        if self.kind is ItemKind.DATA:
            source = self.source.value if self.source else "?"
            return f"StreamItem(DATA[{source}], {self.content!r})"
        return f"StreamItem({self.kind.name})"


_EOF = StreamItem(kind=ItemKind.EOF)
_TIMEOUT = StreamItem(kind=ItemKind.TIMEOUT)
