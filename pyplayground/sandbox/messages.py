"""
Messages exchanged between an isolated execution context and the host.

Messages cross a process boundary, so their wire form is a plain dict of
strings that pickles and JSON-encodes without custom hooks.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..core.exceptions import MessageFormatError


class MessageKind(Enum):
    """Kinds of messages a context can emit."""

    LOG = "log"
    ERROR = "error"
    DONE = "done"

    @property
    def is_terminal(self) -> bool:
        return self is not MessageKind.LOG


@dataclass(frozen=True)
class Message:
    """
    One unit of cross-boundary communication.

    Every message carries the id of the run whose context produced it, so the
    host can discard deliveries from superseded runs.
    """

    run_id: str
    kind: MessageKind
    text: str = ""
    detail: str | None = None

    @classmethod
    def log(cls, run_id: str, text: str) -> "Message":
        return cls(run_id=run_id, kind=MessageKind.LOG, text=text)

    @classmethod
    def error(cls, run_id: str, text: str, detail: str | None = None) -> "Message":
        return cls(run_id=run_id, kind=MessageKind.ERROR, text=text, detail=detail)

    @classmethod
    def done(cls, run_id: str) -> "Message":
        return cls(run_id=run_id, kind=MessageKind.DONE)

    @property
    def is_terminal(self) -> bool:
        return self.kind.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire format."""
        result = {
            "run_id": self.run_id,
            "kind": self.kind.value,
            "text": self.text,
        }
        if self.detail is not None:
            result["detail"] = self.detail
        return result

    @classmethod
    def from_dict(cls, payload: Any) -> "Message":
        """
        Parse a wire payload.

        Raises:
            MessageFormatError: when the payload is not a well-formed message.
        """
        if not isinstance(payload, dict):
            raise MessageFormatError(f"Expected a mapping, got {type(payload).__name__}")

        run_id = payload.get("run_id")
        if not isinstance(run_id, str) or not run_id:
            raise MessageFormatError("Message is missing a run_id")

        raw_kind = payload.get("kind")
        try:
            kind = MessageKind(raw_kind)
        except ValueError:
            raise MessageFormatError(f"Unknown message kind: {raw_kind!r}") from None

        text = payload.get("text", "")
        if not isinstance(text, str):
            raise MessageFormatError("Message text must be a string")

        detail = payload.get("detail")
        if detail is not None and not isinstance(detail, str):
            raise MessageFormatError("Message detail must be a string")

        return cls(run_id=run_id, kind=kind, text=text, detail=detail)
