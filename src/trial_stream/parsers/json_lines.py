"""JSON-lines 消息解析器。

输出结构化数据的 worker 每行写一个 JSON 对象，例如::

    {"type": "measurement", "value": 12.5, "unit": "ns"}

每个对象解析为 ``WorkerMessage``。未知字段会保留，交给本包之外的
消息消费方解释。
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

from .base import ParseError

__all__ = [
    "WorkerMessage",
    "JsonLineParser",
]


class WorkerMessage(BaseModel):
    """worker 发出的一条结构化消息。

    Attributes:
        type: 消息类型标签
        raw: 解析来源的原始行（不属于 payload）
    """

    model_config = ConfigDict(
        extra="allow",
        frozen=True,
    )

    type: str = Field(min_length=1)
    _raw: str = PrivateAttr(default="")

    @property
    def raw(self) -> str:
        return self._raw

    @property
    def payload(self) -> dict[str, Any]:
        """``type`` 以外的字段。"""
        return dict(self.model_extra or {})

    def __str__(self) -> str:
        if self._raw:
            return self._raw
        return json.dumps(self.model_dump(), ensure_ascii=False, default=str)


class JsonLineParser:
    """把每行一个的 JSON 对象解析为 ``WorkerMessage``。

    Example:
        parser = JsonLineParser()
        message = parser.parse('{"type": "ready"}')
        assert message.type == "ready"
    """

    def __init__(self, model: type[WorkerMessage] = WorkerMessage) -> None:
        self.model = model

    def parse(self, text: str) -> WorkerMessage:
        line = text.strip()
        if not line:
            raise ParseError(text, "empty line")

        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ParseError(text, f"invalid JSON ({e.msg})") from e

        if not isinstance(data, dict):
            raise ParseError(text, f"expected a JSON object, got {type(data).__name__}")

        try:
            message = self.model.model_validate(data)
        except ValidationError as e:
            raise ParseError(text, f"invalid message ({e.error_count()} error(s))") from e

        message._raw = line
        return message
