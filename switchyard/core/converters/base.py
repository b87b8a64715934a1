"""Shared converter contract and stream normalization."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterable, AsyncIterator, ClassVar, Dict, List, Optional

from switchyard.core.errors import WireProtocolError
from switchyard.core.messages import FINISH_STOP, CanonicalRequest, CanonicalResponse, Usage
from switchyard.core.provider_registry import ProtocolFamily
from switchyard.utils.log import get_logger
from switchyard.utils.token_estimation import estimate_tokens, estimate_tokens_for_parts

logger = get_logger()

_MAX_LOGGED_PAYLOAD = 2000

# Metadata key a terminal chunk may use to carry the full response text.
RESULT_TEXT_KEY = "result_text"


def as_dict(payload: Any) -> Any:
    """Return SDK model objects as plain dicts; other values pass through."""
    dump = getattr(payload, "model_dump", None)
    if callable(dump):
        return dump()
    return payload


def estimate_usage(request: Optional[CanonicalRequest], output_text: str) -> Usage:
    input_tokens = 0
    if request is not None:
        input_tokens = estimate_tokens_for_parts(turn.content for turn in request.turns)
    return Usage(input_tokens=input_tokens, output_tokens=estimate_tokens(output_text), estimated=True)


def merge_usage(current: Optional[Usage], update: Optional[Usage]) -> Optional[Usage]:
    """Combine partial usage reports; later non-zero counts win."""
    if update is None:
        return current
    if current is None:
        return update
    return Usage(
        input_tokens=update.input_tokens or current.input_tokens,
        output_tokens=update.output_tokens or current.output_tokens,
        estimated=current.estimated and update.estimated,
    )


class FormatConverter(ABC):
    """Translate between the canonical shape and one wire family."""

    family: ClassVar[ProtocolFamily]

    def __init__(self, provider_name: str = "") -> None:
        self.provider_name = provider_name or self.family.value

    @abstractmethod
    def to_wire(self, request: CanonicalRequest) -> Any:
        """Build the wire request for ``request``."""

    @abstractmethod
    def request_from_wire(self, wire: Any) -> CanonicalRequest:
        """Rebuild the canonical request from a wire request."""

    @abstractmethod
    def from_wire(self, response: Any, request: Optional[CanonicalRequest] = None) -> CanonicalResponse:
        """Translate a complete wire response."""

    @abstractmethod
    def from_wire_chunk(self, chunk: Any) -> Optional[CanonicalResponse]:
        """Translate one streamed wire event; None means nothing to emit."""

    def protocol_error(self, detail: str, payload: Any) -> WireProtocolError:
        try:
            raw = json.dumps(payload, default=str)
        except (TypeError, ValueError):
            raw = repr(payload)
        logger.error(
            "[converters] Malformed %s payload: %s",
            self.family.value,
            detail,
            extra={"provider": self.provider_name, "raw_payload": raw[:_MAX_LOGGED_PAYLOAD]},
        )
        return WireProtocolError(self.provider_name, detail, raw_payload=payload)

    async def normalize_stream(
        self,
        chunks: AsyncIterable[Any],
        request: Optional[CanonicalRequest] = None,
    ) -> AsyncIterator[CanonicalResponse]:
        """Yield content chunks, then exactly one terminal chunk.

        Whatever the family uses to mark the end of a turn (finish reason,
        stop event, or simply the end of the stream), the consumer sees the
        same thing: non-terminal chunks with text followed by one chunk with
        ``is_terminal=True``, a finish reason and usage.
        """
        terminal = CanonicalResponse(text="", is_terminal=True)
        emitted: List[str] = []
        async for raw in chunks:
            chunk = self.from_wire_chunk(raw)
            if chunk is None:
                continue
            if chunk.model and not terminal.model:
                terminal.model = chunk.model
            if chunk.text:
                emitted.append(chunk.text)
                yield CanonicalResponse(text=chunk.text, is_terminal=False, model=chunk.model)
            if chunk.finish_reason:
                terminal.finish_reason = chunk.finish_reason
            terminal.usage = merge_usage(terminal.usage, chunk.usage)
            terminal.metadata.update(chunk.metadata)

        result_text = terminal.metadata.pop(RESULT_TEXT_KEY, None)
        if not emitted and result_text:
            emitted.append(result_text)
            yield CanonicalResponse(text=result_text, is_terminal=False, model=terminal.model)
        if terminal.finish_reason is None:
            terminal.finish_reason = FINISH_STOP
        if terminal.usage is None:
            terminal.usage = estimate_usage(request, "".join(emitted))
        yield terminal


def drop_none(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}
