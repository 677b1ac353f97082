"""Digest to identifier index used to deduplicate uploads.

The index is an explicit component: the application builds one at startup
and hands it to :class:`imagestore.service.ImageService`. The in-memory
implementation keeps its bindings for the lifetime of the process only,
so after a restart an upload that was previously deduplicated is stored
again under a new identifier. ``volatile`` advertises that to callers.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol

from .errors import DedupConflictError


class DedupIndex(Protocol):
    volatile: bool

    def lookup(self, digest: str) -> Optional[str]:
        ...

    def digest_for(self, identifier: str) -> Optional[str]:
        ...

    def register(self, digest: str, identifier: str) -> None:
        ...

    def discard(self, digest: str) -> Optional[str]:
        ...

    def discard_identifier(self, identifier: str) -> Optional[str]:
        ...

    def __len__(self) -> int:
        ...


class InMemoryDedupIndex:
    """Thread-safe dict-backed index with a reverse identifier map."""

    volatile = True

    def __init__(self) -> None:
        self._by_digest: Dict[str, str] = {}
        self._by_identifier: Dict[str, str] = {}
        self._lock = threading.Lock()

    def lookup(self, digest: str) -> Optional[str]:
        return self._by_digest.get(digest)

    def digest_for(self, identifier: str) -> Optional[str]:
        return self._by_identifier.get(identifier)

    def register(self, digest: str, identifier: str) -> None:
        """Bind ``digest`` to ``identifier``.

        Raises:
            DedupConflictError: If the digest is bound to another identifier.
        """
        with self._lock:
            existing = self._by_digest.get(digest)
            if existing is not None and existing != identifier:
                raise DedupConflictError(digest, existing, identifier)
            self._bind(digest, identifier)

    def discard(self, digest: str) -> Optional[str]:
        with self._lock:
            identifier = self._by_digest.pop(digest, None)
            if identifier is not None:
                self._by_identifier.pop(identifier, None)
            return identifier

    def discard_identifier(self, identifier: str) -> Optional[str]:
        with self._lock:
            digest = self._by_identifier.pop(identifier, None)
            if digest is not None:
                self._by_digest.pop(digest, None)
            return digest

    def __len__(self) -> int:
        return len(self._by_digest)

    def _bind(self, digest: str, identifier: str) -> None:
        # An identifier holds one digest at a time.
        previous = self._by_identifier.get(identifier)
        if previous is not None and previous != digest:
            self._by_digest.pop(previous, None)
        self._by_digest[digest] = identifier
        self._by_identifier[identifier] = digest
