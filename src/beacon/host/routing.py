from __future__ import annotations

import logging
import time
from typing import Optional

from beacon.domain.models import RouteMapping
from beacon.store.base import StateStore

logger = logging.getLogger(__name__)


class RouteTable:
    """Application-level routing table: logical path -> endpoint mapping.

    Changes are written to the store immediately but only become visible to
    request handling after ``activate()``, which bumps a version counter so
    other processes sharing the store reload their copy.
    """

    def __init__(self, store: StateStore, reload_interval: float = 0.0):
        self.store = store
        self.reload_interval = reload_interval
        self._routes: dict[str, RouteMapping] = {}
        self._version = -1
        self._checked_at = 0.0

    def add(self, mapping: RouteMapping) -> None:
        self.store.save_route(mapping)

    def remove(self, path: str) -> None:
        self.store.delete_route(path)

    def pending(self, path: str) -> Optional[RouteMapping]:
        """Mapping as stored, whether or not it has been activated."""
        for m in self.store.list_routes():
            if m.path == path:
                return m
        return None

    def activate(self) -> int:
        version = self.store.bump_routes_version()
        self._load(version)
        logger.debug("routing table activated at version %s (%s routes)", version, len(self._routes))
        return version

    def load(self) -> None:
        self._load(self.store.get_routes_version())

    def match(self, path: str) -> Optional[RouteMapping]:
        self._maybe_reload()
        return self._routes.get(path)

    def paths(self) -> list[str]:
        self._maybe_reload()
        return sorted(self._routes)

    def _maybe_reload(self) -> None:
        now = time.monotonic()
        if self._version >= 0 and now - self._checked_at < self.reload_interval:
            return
        self._checked_at = now
        version = self.store.get_routes_version()
        if version != self._version:
            self._load(version)

    def _load(self, version: int) -> None:
        self._routes = {m.path: m for m in self.store.list_routes()}
        self._version = version
        self._checked_at = time.monotonic()
