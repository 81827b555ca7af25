"""Background re-resolution of expired cached requests."""

from __future__ import annotations

import abc
import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class CachingResolver(abc.ABC):
    """Resolver that can also cache the responses it gets."""

    @abc.abstractmethod
    def reply_from_upstream(self, dctx) -> tuple[bool, Optional[Exception]]:
        """Resolve ``dctx``; return whether the response may be cached and the error met."""

    @abc.abstractmethod
    def cache_resp(self, dctx) -> None:
        """Cache the response held by ``dctx``."""


class OptimisticResolver:
    """Resolves expired cached requests, one at a time per key."""

    def __init__(self, resolver: CachingResolver) -> None:
        self._resolver = resolver
        self._pending: set[str] = set()
        self._lock = threading.Lock()

    def resolve_once(
        self, dctx, key: bytes, logger: Optional[logging.Logger] = None
    ) -> None:
        """Resolve ``dctx`` unless a request with the same key is in progress.

        ``dctx`` must not be shared with other code, since it's not safe for
        concurrent use.
        """
        log = logger if logger is not None else globals_logger()
        hexed = key.hex()
        with self._lock:
            if hexed in self._pending:
                return
            self._pending.add(hexed)

        try:
            ok, err = self._resolver.reply_from_upstream(dctx)
            if err is not None:
                log.debug("resolving request for optimistic cache: %s", err)
            if ok:
                self._resolver.cache_resp(dctx)
        except Exception:
            log.exception("recovered from an error in optimistic resolving")
        finally:
            with self._lock:
                self._pending.discard(hexed)


def globals_logger() -> logging.Logger:
    """Return the module's default logger."""
    return logger