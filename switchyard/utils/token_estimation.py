"""Character-based token estimation for backends that report no usage."""

from __future__ import annotations

import math
from typing import Iterable

# Tunable. Roughly four characters of English text per token.
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    """Estimate the token count of ``text``; empty text counts as zero."""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / chars_per_token))


def estimate_tokens_for_parts(parts: Iterable[str]) -> int:
    return estimate_tokens("".join(part for part in parts if part))


__all__ = ["CHARS_PER_TOKEN", "estimate_tokens", "estimate_tokens_for_parts"]
