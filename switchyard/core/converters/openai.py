"""OpenAI-compatible chat completions wire family."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from switchyard.core.converters.base import FormatConverter, as_dict, drop_none, estimate_usage
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

_FINISH_REASONS = {
    "stop": FINISH_STOP,
    "length": FINISH_LENGTH,
    "tool_calls": FINISH_TOOL_USE,
    "function_call": FINISH_TOOL_USE,
}
_ROLES = ("system", "user", "assistant")


def normalize_finish_reason(reason: Optional[str]) -> Optional[str]:
    if reason is None:
        return None
    return _FINISH_REASONS.get(reason, FINISH_OTHER)


def _content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"
        )
    return str(content)


def _usage(payload: Any) -> Optional[Usage]:
    if not isinstance(payload, dict):
        return None
    return Usage(
        input_tokens=int(payload.get("prompt_tokens") or 0),
        output_tokens=int(payload.get("completion_tokens") or 0),
    )


class OpenAIConverter(FormatConverter):
    """System turns stay inline as ordinary ``system`` messages."""

    family = ProtocolFamily.OPENAI_COMPATIBLE

    def to_wire(self, request: CanonicalRequest) -> Dict[str, Any]:
        if request.top_k is not None:
            logger.debug("[converters] top_k is not supported by openai-compatible backends; dropped")
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": [{"role": turn.role, "content": turn.content} for turn in request.turns],
            "stream": request.stream,
        }
        payload.update(
            drop_none(
                {
                    "max_tokens": request.max_tokens,
                    "temperature": request.temperature,
                    "top_p": request.top_p,
                    "stop": list(request.stop_sequences) or None,
                }
            )
        )
        if request.stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def request_from_wire(self, wire: Dict[str, Any]) -> CanonicalRequest:
        turns: List[Turn] = []
        for message in wire.get("messages") or []:
            role = message.get("role")
            if role not in _ROLES:
                raise self.protocol_error(f"unsupported message role {role!r}", wire)
            turns.append(Turn(role, _content_text(message.get("content"))))
        return CanonicalRequest(
            turns=tuple(turns),
            model=wire.get("model"),
            max_tokens=wire.get("max_tokens"),
            temperature=wire.get("temperature"),
            top_p=wire.get("top_p"),
            stop_sequences=tuple(wire.get("stop") or ()),
            stream=bool(wire.get("stream", False)),
        )

    def from_wire(self, response: Any, request: Optional[CanonicalRequest] = None) -> CanonicalResponse:
        payload = as_dict(response)
        if not isinstance(payload, dict):
            raise self.protocol_error("response is not an object", payload)
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise self.protocol_error("response has no choices", payload)
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise self.protocol_error("choice has no message", payload)
        text = _content_text(message.get("content"))
        usage = _usage(payload.get("usage")) or estimate_usage(request, text)
        return CanonicalResponse(
            text=text,
            is_terminal=True,
            finish_reason=normalize_finish_reason(choices[0].get("finish_reason")) or FINISH_STOP,
            usage=usage,
            model=payload.get("model"),
        )

    def from_wire_chunk(self, chunk: Any) -> Optional[CanonicalResponse]:
        payload = as_dict(chunk)
        if not isinstance(payload, dict):
            raise self.protocol_error("stream chunk is not an object", payload)
        usage = _usage(payload.get("usage"))
        choices = payload.get("choices") or []
        if not choices:
            if usage is None:
                return None
            return CanonicalResponse(text="", is_terminal=False, usage=usage, model=payload.get("model"))
        choice = choices[0]
        if not isinstance(choice, dict):
            raise self.protocol_error("stream choice is not an object", payload)
        delta = choice.get("delta") or {}
        text = _content_text(delta.get("content")) if isinstance(delta, dict) else ""
        finish_reason = normalize_finish_reason(choice.get("finish_reason"))
        if not text and finish_reason is None and usage is None:
            return None
        return CanonicalResponse(
            text=text,
            is_terminal=finish_reason is not None,
            finish_reason=finish_reason,
            usage=usage,
            model=payload.get("model"),
        )
