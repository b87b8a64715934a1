"""Format converters, one per protocol family."""

from __future__ import annotations

from typing import Dict, Type

from switchyard.core.converters.anthropic import AnthropicConverter
from switchyard.core.converters.base import FormatConverter
from switchyard.core.converters.openai import OpenAIConverter
from switchyard.core.converters.stream_json import CliInvocation, StreamJsonConverter
from switchyard.core.provider_registry import ProtocolFamily

CONVERTERS: Dict[ProtocolFamily, Type[FormatConverter]] = {
    ProtocolFamily.OPENAI_COMPATIBLE: OpenAIConverter,
    ProtocolFamily.NATIVE_OAUTH: AnthropicConverter,
    ProtocolFamily.SUBPROCESS_CLI: StreamJsonConverter,
}

if set(CONVERTERS) != set(ProtocolFamily):
    raise RuntimeError("every protocol family needs exactly one converter")


def converter_for(family: ProtocolFamily, provider_name: str = "") -> FormatConverter:
    return CONVERTERS[family](provider_name)


__all__ = [
    "AnthropicConverter",
    "CONVERTERS",
    "CliInvocation",
    "FormatConverter",
    "OpenAIConverter",
    "StreamJsonConverter",
    "converter_for",
]
