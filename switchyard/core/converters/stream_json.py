"""Wire family of the Claude Code CLI (``claude -p``).

Requests become command-line arguments plus a flattened prompt on stdin.
Non-streaming calls read one JSON document; streaming calls read
newline-delimited JSON events (``system``, ``assistant``, ``result``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from switchyard.core.converters.base import RESULT_TEXT_KEY, FormatConverter, estimate_usage
from switchyard.core.errors import AuthExpiredError, BackendRequestError
from switchyard.core.messages import FINISH_STOP, CanonicalRequest, CanonicalResponse, Turn, Usage
from switchyard.core.provider_registry import ProtocolFamily

JSON_OUTPUT_FLAGS: Tuple[str, ...] = ("--output-format=json",)
# The CLI rejects stream-json output unless --verbose is also given.
STREAM_OUTPUT_FLAGS: Tuple[str, ...] = ("--output-format=stream-json", "--verbose")

_ROLE_LABELS = {"system": "System", "user": "User", "assistant": "Assistant"}
_LABEL_ROLES = {label: role for role, label in _ROLE_LABELS.items()}
_SEGMENT_RE = re.compile(r"^\[(System|User|Assistant)\]: ", re.MULTILINE)
_AUTH_HINTS = ("/login", "invalid api key", "not logged in", "authentication", "oauth token")


@dataclass(frozen=True)
class CliInvocation:
    args: Tuple[str, ...]
    stdin: str
    stream: bool = False


def build_cli_args(model: Optional[str], *, stream: bool) -> Tuple[str, ...]:
    args: List[str] = ["-p", *(STREAM_OUTPUT_FLAGS if stream else JSON_OUTPUT_FLAGS)]
    if model:
        args.extend(["--model", model])
    return tuple(args)


def check_output_flags(args: Sequence[str]) -> None:
    """Raise ValueError unless the output flags form one of the accepted sets."""
    streaming = "--output-format=stream-json" in args
    if streaming and "--verbose" not in args:
        raise ValueError("--output-format=stream-json requires --verbose")
    if not streaming and "--output-format=json" not in args:
        raise ValueError("an output format flag is required")


def flatten_prompt(turns: Sequence[Turn]) -> str:
    return "\n\n".join(f"[{_ROLE_LABELS[turn.role]}]: {turn.content}" for turn in turns)


def parse_prompt(prompt: str) -> Tuple[Turn, ...]:
    matches = list(_SEGMENT_RE.finditer(prompt))
    if not matches:
        return (Turn("user", prompt),) if prompt else ()
    turns: List[Turn] = []
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(prompt)
        content = prompt[match.end() : end]
        if index + 1 < len(matches) and content.endswith("\n\n"):
            content = content[:-2]
        turns.append(Turn(_LABEL_ROLES[match.group(1)], content))
    return tuple(turns)


def _result_usage(payload: Dict[str, Any]) -> Optional[Usage]:
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return None
    input_tokens = sum(
        int(usage.get(key) or 0)
        for key in ("input_tokens", "cache_creation_input_tokens", "cache_read_input_tokens")
    )
    return Usage(input_tokens=input_tokens, output_tokens=int(usage.get("output_tokens") or 0))


def _result_metadata(payload: Dict[str, Any]) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {}
    for source, target in (
        ("total_cost_usd", "cost_usd"),
        ("session_id", "session_id"),
        ("duration_ms", "duration_ms"),
    ):
        if payload.get(source) is not None:
            metadata[target] = payload[source]
    return metadata


class StreamJsonConverter(FormatConverter):
    family = ProtocolFamily.SUBPROCESS_CLI

    def to_wire(self, request: CanonicalRequest) -> CliInvocation:
        args = build_cli_args(request.model, stream=request.stream)
        check_output_flags(args)
        return CliInvocation(args=args, stdin=flatten_prompt(request.turns) + "\n", stream=request.stream)

    def request_from_wire(self, wire: CliInvocation) -> CanonicalRequest:
        args = list(wire.args)
        model = args[args.index("--model") + 1] if "--model" in args else None
        prompt = wire.stdin[:-1] if wire.stdin.endswith("\n") else wire.stdin
        return CanonicalRequest(turns=parse_prompt(prompt), model=model, stream=wire.stream)

    def _raise_for_error_result(self, payload: Dict[str, Any]) -> None:
        if not payload.get("is_error") and not str(payload.get("subtype", "")).startswith("error"):
            return
        detail = str(payload.get("result") or payload.get("subtype") or "CLI reported an error")
        if any(hint in detail.lower() for hint in _AUTH_HINTS):
            raise AuthExpiredError(self.provider_name, f"{detail} (run `claude` and log in again)")
        raise BackendRequestError(self.provider_name, detail)

    def from_wire(self, response: Any, request: Optional[CanonicalRequest] = None) -> CanonicalResponse:
        if not isinstance(response, dict) or response.get("type") != "result":
            raise self.protocol_error("expected a result document", response)
        self._raise_for_error_result(response)
        text = response.get("result")
        if not isinstance(text, str):
            raise self.protocol_error("result document has no result text", response)
        return CanonicalResponse(
            text=text,
            is_terminal=True,
            finish_reason=FINISH_STOP,
            usage=_result_usage(response) or estimate_usage(request, text),
            metadata=_result_metadata(response),
        )

    def from_wire_chunk(self, chunk: Any) -> Optional[CanonicalResponse]:
        if not isinstance(chunk, dict) or not isinstance(chunk.get("type"), str):
            raise self.protocol_error("stream event has no type", chunk)
        event_type = chunk["type"]
        if event_type == "assistant":
            message = chunk.get("message")
            if not isinstance(message, dict):
                raise self.protocol_error("assistant event has no message", chunk)
            content = message.get("content") or []
            text = "".join(
                block.get("text", "")
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            )
            return CanonicalResponse(text=text, is_terminal=False, model=message.get("model"))
        if event_type == "result":
            self._raise_for_error_result(chunk)
            metadata = _result_metadata(chunk)
            if isinstance(chunk.get("result"), str):
                metadata[RESULT_TEXT_KEY] = chunk["result"]
            return CanonicalResponse(
                text="",
                is_terminal=True,
                finish_reason=FINISH_STOP,
                usage=_result_usage(chunk),
                metadata=metadata,
            )
        # system/init and user (tool result) events carry nothing to emit.
        return None
