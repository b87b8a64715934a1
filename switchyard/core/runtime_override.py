"""Process-wide runtime override and its preservation across host refreshes.

The host rebuilds its configuration object from defaults whenever it
refreshes credentials, which would silently drop the model the user
switched to. ``StatePreservationManager`` snapshots the override right
before such a refresh and reapplies it right after. Configuration objects
are tracked through weak references only.
"""

from __future__ import annotations

import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Protocol, Tuple, TypeVar, runtime_checkable

from switchyard.utils.log import get_logger

logger = get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RuntimeOverride:
    active_provider_name: str
    active_model_id: str
    endpoint_override: Optional[str] = None


@runtime_checkable
class OverridableConfig(Protocol):
    """What the manager needs from a host configuration object."""

    def get_runtime_override(self) -> Optional[RuntimeOverride]: ...

    def set_runtime_override(self, override: Optional[RuntimeOverride]) -> None: ...


class StatePreservationManager:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._override: Optional[RuntimeOverride] = None
        # Bumped by every explicit switch so a restore can tell one happened mid-refresh.
        self._generation = 0
        self._configs: "weakref.WeakSet[OverridableConfig]" = weakref.WeakSet()
        self._snapshots: "weakref.WeakKeyDictionary[OverridableConfig, Tuple[Optional[RuntimeOverride], int]]" = (
            weakref.WeakKeyDictionary()
        )

    def current(self) -> Optional[RuntimeOverride]:
        return self._override

    def register_config(self, config: OverridableConfig) -> None:
        with self._lock:
            self._configs.add(config)

    def tracked_config_count(self) -> int:
        return len(self._configs)

    def set_override(
        self,
        provider_name: str,
        model_id: str,
        endpoint_override: Optional[str] = None,
    ) -> RuntimeOverride:
        """Record an explicit user switch and push it to every live configuration."""
        override = RuntimeOverride(provider_name, model_id, endpoint_override)
        self._apply(override)
        logger.debug(
            "[override] Runtime override set",
            extra={"provider": provider_name, "model": model_id},
        )
        return override

    def restore_override(self, override: Optional[RuntimeOverride]) -> None:
        """Put back a previous override, e.g. when a switch is rolled back."""
        self._apply(override)

    def _apply(self, override: Optional[RuntimeOverride]) -> None:
        with self._lock:
            self._override = override
            self._generation += 1
            for config in list(self._configs):
                config.set_runtime_override(override)

    def preserve_before_refresh(self, config: OverridableConfig) -> Optional[RuntimeOverride]:
        with self._lock:
            self._configs.add(config)
            if self._override is None:
                # Adopt a choice the config already carries.
                self._override = config.get_runtime_override()
            snapshot = self._override
            self._snapshots[config] = (snapshot, self._generation)
        logger.debug(
            "[override] Preserved override before refresh",
            extra={"provider": snapshot.active_provider_name if snapshot else None},
        )
        return snapshot

    def restore_after_refresh(self, config: OverridableConfig) -> Optional[RuntimeOverride]:
        with self._lock:
            entry = self._snapshots.pop(config, None)
            if entry is None:
                logger.error(
                    "[override] Refresh finished without a preserved snapshot; runtime override may be lost",
                    extra={"config": type(config).__name__},
                )
                restored = self._override
            else:
                snapshot, generation = entry
                # An explicit switch during the refresh wins over the snapshot.
                restored = self._override if generation != self._generation else snapshot
                self._override = restored
            config.set_runtime_override(restored)
        logger.debug(
            "[override] Restored override after refresh",
            extra={"provider": restored.active_provider_name if restored else None},
        )
        return restored

    @contextmanager
    def preserved(self, config: OverridableConfig) -> Iterator[Optional[RuntimeOverride]]:
        """Bracket a refresh of ``config``; the restore runs even if the refresh fails."""
        snapshot = self.preserve_before_refresh(config)
        try:
            yield snapshot
        finally:
            self.restore_after_refresh(config)

    def reset(self) -> None:
        with self._lock:
            self._override = None
            self._generation = 0
            self._configs = weakref.WeakSet()
            self._snapshots = weakref.WeakKeyDictionary()


def refresh_with_preservation(config: OverridableConfig, refresh: Callable[[], T]) -> T:
    """Run ``refresh`` for ``config`` inside the preserve/restore bracket."""
    with get_state_manager().preserved(config):
        return refresh()


# Global instance
_state_manager: Optional[StatePreservationManager] = None


def get_state_manager() -> StatePreservationManager:
    global _state_manager
    if _state_manager is None:
        _state_manager = StatePreservationManager()
    return _state_manager
