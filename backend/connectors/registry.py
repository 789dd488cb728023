"""Registry mapping platform keys to adapter instances."""

from __future__ import annotations

from typing import Iterable, Mapping

from predictwatch.core.config import Settings, get_settings

from .base import PlatformAdapter
from .kalshi import KalshiAdapter


class UnknownPlatformError(LookupError):
    """Raised when a site names a platform no adapter is registered for."""


class AdapterRegistry:
    """Explicit key -> adapter mapping, built once and handed to services."""

    def __init__(self, adapters: Mapping[str, PlatformAdapter] | Iterable[PlatformAdapter] = ()) -> None:
        items = adapters.items() if isinstance(adapters, Mapping) else ((a.key, a) for a in adapters)
        self._adapters: dict[str, PlatformAdapter] = {
            key.lower(): adapter for key, adapter in items
        }

    def resolve(self, platform_key: str) -> PlatformAdapter:
        """Return the adapter registered under ``platform_key``."""

        try:
            return self._adapters[(platform_key or "").lower()]
        except KeyError as exc:
            raise UnknownPlatformError(
                f"Platform '{platform_key}' is not registered "
                f"(available: {', '.join(self.available()) or 'none'})"
            ) from exc

    def available(self) -> tuple[str, ...]:
        return tuple(sorted(self._adapters))

    def __contains__(self, platform_key: object) -> bool:
        return isinstance(platform_key, str) and platform_key.lower() in self._adapters

    def close(self) -> None:
        for adapter in self._adapters.values():
            adapter.close()


def build_registry(settings: Settings | None = None) -> AdapterRegistry:
    """Return a registry holding the built-in adapters."""

    cfg = settings or get_settings()
    return AdapterRegistry([KalshiAdapter(settings=cfg)])


__all__ = ["AdapterRegistry", "UnknownPlatformError", "build_registry"]
