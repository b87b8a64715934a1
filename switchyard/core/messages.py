"""Canonical request/response shapes shared by every wire family."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Optional, Tuple

Role = Literal["system", "user", "assistant"]

FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_TOOL_USE = "tool_use"
FINISH_OTHER = "other"


@dataclass(frozen=True)
class Turn:
    role: Role
    content: str


@dataclass(frozen=True)
class CanonicalRequest:
    """Protocol-neutral request.

    ``turns`` keeps system turns inline; converters decide where system
    content goes on the wire.
    """

    turns: Tuple[Turn, ...]
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop_sequences: Tuple[str, ...] = ()
    stream: bool = False

    @classmethod
    def from_prompt(cls, prompt: str, *, system: Optional[str] = None, **params: Any) -> "CanonicalRequest":
        turns: List[Turn] = []
        if system:
            turns.append(Turn("system", system))
        turns.append(Turn("user", prompt))
        return cls(turns=tuple(turns), **params)

    @property
    def system_text(self) -> Optional[str]:
        """All system turns joined by blank lines, or None when there are none."""
        parts = [turn.content for turn in self.turns if turn.role == "system" and turn.content]
        return "\n\n".join(parts) if parts else None

    @property
    def conversation(self) -> Tuple[Turn, ...]:
        return tuple(turn for turn in self.turns if turn.role != "system")

    def with_model(self, model: str) -> "CanonicalRequest":
        return replace(self, model=model)

    def with_stream(self, stream: bool) -> "CanonicalRequest":
        return replace(self, stream=stream)


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    # True when the counts were derived from text length rather than reported.
    estimated: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CanonicalResponse:
    """A full response, or one chunk of a streamed response.

    In a stream every chunk but the last has ``is_terminal=False``; the last
    one carries the finish reason and usage and no new text.
    """

    text: str = ""
    is_terminal: bool = True
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    model: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def content(cls, text: str) -> "CanonicalResponse":
        return cls(text=text, is_terminal=False)
