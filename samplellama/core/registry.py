"""Registry of attached sampling endpoints.

Zero or more MCP hosts may be attached at once (stdio gives one, the
Streamable HTTP transport may give several).  Requests always go to the
*current* endpoint: the most recently attached one, or an arbitrary
survivor once that one detaches.

Usage:

    registry = EndpointRegistry()
    registry.attach(endpoint)
    spawn(watch_endpoint(registry, endpoint))   # detaches on close
    endpoint = registry.current()
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager

from ..types import Endpoint

logger = logging.getLogger(__name__)


class _ReadWriteLock:
    """Many concurrent readers or one writer.

    Writers are preferred once waiting so a steady stream of readers
    cannot starve ``attach``/``detach``.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class EndpointRegistry:
    """Thread-safe map of endpoint id → endpoint plus a current pointer.

    The current pointer, when set, always refers to an endpoint in the map.
    Lock hold times are a few dictionary operations; no sampling call is
    ever made while holding the lock.
    """

    def __init__(self) -> None:
        self._lock = _ReadWriteLock()
        self._endpoints: dict[str, Endpoint] = {}
        self._current: Endpoint | None = None

    def attach(self, endpoint: Endpoint) -> None:
        """Register *endpoint* and make it current (most recent wins)."""
        with self._lock.write():
            self._endpoints[endpoint.endpoint_id] = endpoint
            self._current = endpoint
            total = len(self._endpoints)
        logger.info("Endpoint attached: %s (total=%d)", endpoint.endpoint_id[:12], total)

    def detach(self, endpoint_id: str) -> None:
        """Remove the endpoint with *endpoint_id*; absent ids are ignored.

        If it was current, any remaining endpoint becomes current.  Which
        one is deliberately unspecified.
        """
        with self._lock.write():
            removed = self._endpoints.pop(endpoint_id, None)
            if self._current is not None and self._current.endpoint_id == endpoint_id:
                self._current = next(iter(self._endpoints.values()), None)
            total = len(self._endpoints)
        if removed is not None:
            logger.info("Endpoint detached: %s (total=%d)", endpoint_id[:12], total)

    def current(self) -> Endpoint | None:
        """Return the current endpoint, or None when nothing is attached."""
        with self._lock.read():
            return self._current

    def endpoint_ids(self) -> list[str]:
        with self._lock.read():
            return list(self._endpoints)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._endpoints)


async def watch_endpoint(registry: EndpointRegistry, endpoint: Endpoint) -> None:
    """Wait for *endpoint* to close, then detach it from *registry*.

    Holds only a weak reference so a pending watcher never keeps the
    registry alive.  Detaches on cancellation too.
    """
    registry_ref = weakref.ref(registry)
    del registry
    try:
        await endpoint.wait_closed()
    finally:
        owner = registry_ref()
        if owner is not None:
            owner.detach(endpoint.endpoint_id)
