"""Request fingerprints and the short-lived deduplication cache.

A fingerprint is a SHA-256 over the semantic fields of a request.  The
cache maps ``sprite-cache:<fingerprint>`` to a generation id for 24 hours
so identical requests resolve to the existing generation.
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from typing import Callable

from spritegate.constants import FINGERPRINT_TTL_SECONDS
from spritegate.logging import get_logger
from spritegate.models import GenerationRequest, SpriteLayout

logger = get_logger("fingerprint")

CACHE_KEY_PREFIX = "sprite-cache:"


def build_fingerprint(
    request: GenerationRequest, layout: SpriteLayout, model: str
) -> str:
    """Stable hex digest over the request's semantic fields.

    Token counts, timestamps and other volatile values are never part of
    the digest.  Keys are sorted so field order does not matter.
    """
    payload = {
        "userId": request.user_id,
        "prompt": request.prompt,
        "spriteSize": request.sprite_size,
        "frameCount": request.frame_count,
        "projection": request.projection.value,
        "animationType": request.animation_type,
        "styleIntensity": request.style_intensity,
        "columns": layout.columns,
        "rows": layout.rows,
        "seed": request.seed,
        "modelVersion": model,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def cache_key(fingerprint: str) -> str:
    return f"{CACHE_KEY_PREFIX}{fingerprint}"


class FingerprintCache:
    """In-process TTL cache from fingerprint to generation id.

    All operations take a lock, so :meth:`set_if_absent` is atomic with
    respect to concurrent identical requests.
    """

    def __init__(
        self,
        ttl_seconds: float = FINGERPRINT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        generation_id, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return generation_id

    def get(self, fingerprint: str) -> str | None:
        """Generation id cached for *fingerprint*, or None if absent/expired."""
        with self._lock:
            return self._live(cache_key(fingerprint))

    def set(self, fingerprint: str, generation_id: str) -> None:
        """Map *fingerprint* to *generation_id*, resetting the TTL."""
        with self._lock:
            self._entries[cache_key(fingerprint)] = (
                generation_id,
                self._clock() + self._ttl,
            )

    def set_if_absent(self, fingerprint: str, generation_id: str) -> str:
        """Register *generation_id* unless a live entry exists.

        Returns:
            The id now associated with the fingerprint: *generation_id* if
            it was stored, otherwise the existing one.
        """
        key = cache_key(fingerprint)
        with self._lock:
            existing = self._live(key)
            if existing is not None:
                logger.debug("Fingerprint %s already mapped to %s", fingerprint[:12], existing)
                return existing
            self._entries[key] = (generation_id, self._clock() + self._ttl)
            return generation_id

    def delete(self, fingerprint: str) -> None:
        with self._lock:
            self._entries.pop(cache_key(fingerprint), None)

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for key in list(self._entries) if self._live(key) is not None)
