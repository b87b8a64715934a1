"""The host's rebuildable configuration object.

``refresh_auth`` rebuilds everything from the user's defaults, as the host
does on every credential refresh. It always runs inside the
:class:`StatePreservationManager` bracket; there is no unbracketed variant.
"""

from __future__ import annotations

from typing import Callable, Optional

from switchyard.core.auth_resolver import AuthMethod
from switchyard.core.config import UserSettings, get_user_settings
from switchyard.core.runtime_override import (
    RuntimeOverride,
    StatePreservationManager,
    get_state_manager,
)


class SessionConfig:
    def __init__(
        self,
        *,
        settings_provider: Callable[[], UserSettings] = get_user_settings,
        manager: Optional[StatePreservationManager] = None,
    ) -> None:
        self._settings_provider = settings_provider
        self._manager = manager or get_state_manager()
        self.provider_name: Optional[str] = None
        self.model_id: Optional[str] = None
        self.auth_method: Optional[AuthMethod] = None
        self._runtime_override: Optional[RuntimeOverride] = None
        self.refresh_count = 0
        self._rebuild_from_defaults(None)
        self._runtime_override = self._manager.current()
        self._manager.register_config(self)

    def get_runtime_override(self) -> Optional[RuntimeOverride]:
        return self._runtime_override

    def set_runtime_override(self, override: Optional[RuntimeOverride]) -> None:
        self._runtime_override = override

    def effective_target(self) -> Optional[RuntimeOverride]:
        """The runtime override if there is one, else the configured defaults."""
        if self._runtime_override is not None:
            return self._runtime_override
        if self.provider_name and self.model_id:
            return RuntimeOverride(self.provider_name, self.model_id)
        return None

    def refresh_auth(self, auth_method: Optional[AuthMethod] = None) -> None:
        with self._manager.preserved(self):
            self._rebuild_from_defaults(auth_method)
        self.refresh_count += 1

    def _rebuild_from_defaults(self, auth_method: Optional[AuthMethod]) -> None:
        settings = self._settings_provider()
        self.provider_name = settings.default_provider
        self.model_id = settings.default_model
        self.auth_method = auth_method
        self._runtime_override = None
