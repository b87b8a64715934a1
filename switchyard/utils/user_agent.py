"""User-Agent generation for outbound HTTP requests.

Format: switchyard/{version} ({source})
"""

from __future__ import annotations

import os
from typing import Literal

from switchyard import __version__

UserAgentSource = Literal["cli", "library"]

SWITCHYARD_CLIENT_SOURCE_ENV = "SWITCHYARD_CLIENT_SOURCE"

DEFAULT_SOURCE: UserAgentSource = "library"


def get_client_source() -> UserAgentSource:
    """Get the client source type from environment or default."""
    source = os.environ.get(SWITCHYARD_CLIENT_SOURCE_ENV, "").lower()
    if source == "cli":
        return "cli"
    return DEFAULT_SOURCE


def build_user_agent(source: UserAgentSource | None = None) -> str:
    """Build the User-Agent header value."""
    if source is None:
        source = get_client_source()
    return f"switchyard/{__version__} ({source})"
