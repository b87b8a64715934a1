"""Native Anthropic Messages wire family.

System content is not a message role here: it is hoisted into the top-level
``system`` field, and every request must carry ``max_tokens``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from switchyard.core.converters.base import FormatConverter, as_dict, drop_none, estimate_usage
from switchyard.core.errors import BackendRequestError
from switchyard.core.messages import (
    FINISH_LENGTH,
    FINISH_OTHER,
    FINISH_STOP,
    FINISH_TOOL_USE,
    CanonicalRequest,
    CanonicalResponse,
    Turn,
    Usage,
)
from switchyard.core.provider_registry import ProtocolFamily
from switchyard.utils.log import get_logger

logger = get_logger()

DEFAULT_MAX_TOKENS = 4000

_FINISH_REASONS = {
    "end_turn": FINISH_STOP,
    "stop_sequence": FINISH_STOP,
    "max_tokens": FINISH_LENGTH,
    "tool_use": FINISH_TOOL_USE,
}
_SILENT_EVENTS = {"ping", "content_block_start", "content_block_stop"}


def normalize_finish_reason(reason: Optional[str]) -> Optional[str]:
    if reason is None:
        return None
    return _FINISH_REASONS.get(reason, FINISH_OTHER)


def _blocks_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def _usage(payload: Any) -> Optional[Usage]:
    if not isinstance(payload, dict):
        return None
    return Usage(
        input_tokens=int(payload.get("input_tokens") or 0),
        output_tokens=int(payload.get("output_tokens") or 0),
    )


def validate_request(payload: Dict[str, Any]) -> None:
    """Reject requests the Messages API would refuse anyway."""
    if not payload.get("model"):
        raise ValueError("model is required")
    max_tokens = payload.get("max_tokens")
    if not isinstance(max_tokens, int) or max_tokens <= 0:
        raise ValueError("max_tokens must be a positive integer")
    messages = payload.get("messages") or []
    if not messages:
        raise ValueError("at least one user or assistant message is required")
    for message in messages:
        if message.get("role") not in ("user", "assistant"):
            raise ValueError(f"invalid message role {message.get('role')!r}")
    for field in ("temperature", "top_p"):
        value = payload.get(field)
        if value is not None and not 0 <= value <= 1:
            raise ValueError(f"{field} must be between 0 and 1")
    top_k = payload.get("top_k")
    if top_k is not None and (not isinstance(top_k, int) or top_k <= 0):
        raise ValueError("top_k must be a positive integer")


class AnthropicConverter(FormatConverter):
    family = ProtocolFamily.NATIVE_OAUTH

    def __init__(self, provider_name: str = "", default_max_tokens: int = DEFAULT_MAX_TOKENS) -> None:
        super().__init__(provider_name)
        self.default_max_tokens = default_max_tokens

    def to_wire(self, request: CanonicalRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens or self.default_max_tokens,
            "messages": [
                {"role": turn.role, "content": turn.content} for turn in request.conversation
            ],
        }
        payload.update(
            drop_none(
                {
                    "system": request.system_text,
                    "temperature": request.temperature,
                    "top_p": request.top_p,
                    "top_k": request.top_k,
                    "stop_sequences": list(request.stop_sequences) or None,
                }
            )
        )
        if request.stream:
            payload["stream"] = True
        validate_request(payload)
        return payload

    def request_from_wire(self, wire: Dict[str, Any]) -> CanonicalRequest:
        turns: List[Turn] = []
        system = wire.get("system")
        system_text = _blocks_text(system) if system is not None else ""
        if system_text:
            turns.append(Turn("system", system_text))
        for message in wire.get("messages") or []:
            role = message.get("role")
            if role not in ("user", "assistant"):
                raise self.protocol_error(f"unsupported message role {role!r}", wire)
            turns.append(Turn(role, _blocks_text(message.get("content"))))
        return CanonicalRequest(
            turns=tuple(turns),
            model=wire.get("model"),
            max_tokens=wire.get("max_tokens"),
            temperature=wire.get("temperature"),
            top_p=wire.get("top_p"),
            top_k=wire.get("top_k"),
            stop_sequences=tuple(wire.get("stop_sequences") or ()),
            stream=bool(wire.get("stream", False)),
        )

    def from_wire(self, response: Any, request: Optional[CanonicalRequest] = None) -> CanonicalResponse:
        payload = as_dict(response)
        if not isinstance(payload, dict):
            raise self.protocol_error("response is not an object", payload)
        content = payload.get("content")
        if not isinstance(content, list):
            raise self.protocol_error("response has no content blocks", payload)
        text = _blocks_text(content)
        return CanonicalResponse(
            text=text,
            is_terminal=True,
            finish_reason=normalize_finish_reason(payload.get("stop_reason")) or FINISH_STOP,
            usage=_usage(payload.get("usage")) or estimate_usage(request, text),
            model=payload.get("model"),
        )

    def from_wire_chunk(self, chunk: Any) -> Optional[CanonicalResponse]:
        event = as_dict(chunk)
        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            raise self.protocol_error("stream event has no type", event)
        event_type = event["type"]

        if event_type in _SILENT_EVENTS:
            return None
        if event_type == "message_start":
            message = event.get("message") or {}
            return CanonicalResponse(
                text="",
                is_terminal=False,
                usage=_usage(message.get("usage")),
                model=message.get("model"),
            )
        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") != "text_delta":
                return None
            return CanonicalResponse.content(delta.get("text") or "")
        if event_type == "message_delta":
            delta = event.get("delta") or {}
            return CanonicalResponse(
                text="",
                is_terminal=False,
                finish_reason=normalize_finish_reason(delta.get("stop_reason")),
                usage=_usage(event.get("usage")),
            )
        if event_type == "message_stop":
            return CanonicalResponse(text="", is_terminal=True)
        if event_type == "error":
            error = event.get("error") or {}
            raise BackendRequestError(self.provider_name, str(error.get("message") or error))

        logger.debug("[converters] Skipping unknown stream event", extra={"event_type": event_type})
        return None
