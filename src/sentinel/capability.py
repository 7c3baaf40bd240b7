"""
Rotating pool of credentials and model variants for the inference service.

Retry policy per attempt:
- overloaded upstream: back off exponentially, keep the same entry
- rate limited or unknown variant: rotate to the next entry, no backoff
- anything else: propagate immediately
"""

from __future__ import annotations

import itertools
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence

import httpx

from .errors import (
    CapabilityError,
    CapabilityExhausted,
    CapabilityOverloaded,
    CapabilityRateLimited,
    UnknownVariant,
)

logger = logging.getLogger(__name__)


DEFAULT_MAX_ATTEMPTS = 14
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


@dataclass(frozen=True)
class CapabilityEntry:
    """One interchangeable (credential, variant) pair."""

    credential: str
    variant: str

    def __repr__(self) -> str:
        # Never print the credential itself.
        return f"CapabilityEntry(credential=...{self.credential[-4:]}, variant={self.variant!r})"


class InferenceBackend(Protocol):
    def generate(self, entry: CapabilityEntry, prompt: str) -> str: ...


class GeminiBackend:
    """Calls the Generative Language REST API and maps failures to pool errors."""

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        base_url: str = GEMINI_API_BASE,
        timeout: float = 30.0,
    ):
        self._client = client or httpx.Client(timeout=timeout)
        self.base_url = base_url.rstrip("/")

    def generate(self, entry: CapabilityEntry, prompt: str) -> str:
        url = f"{self.base_url}/models/{entry.variant}:generateContent"
        body = {"contents": [{"parts": [{"text": prompt}]}]}
        try:
            response = self._client.post(url, params={"key": entry.credential}, json=body)
        except httpx.TimeoutException as e:
            raise CapabilityOverloaded(f"Timed out calling {entry.variant}") from e
        except httpx.HTTPError as e:
            raise CapabilityError(f"Transport error calling {entry.variant}: {e}") from e

        if response.status_code == 429:
            raise CapabilityRateLimited(f"Rate limited on {entry.variant}")
        if response.status_code == 503:
            raise CapabilityOverloaded(f"{entry.variant} is overloaded")
        if response.status_code == 404:
            raise UnknownVariant(f"Model variant not found: {entry.variant}")
        if response.status_code >= 400:
            raise CapabilityError(
                f"Inference request failed ({response.status_code}): {response.text[:200]}"
            )

        try:
            payload = response.json()
            parts = payload["candidates"][0]["content"]["parts"]
            return "".join(part.get("text", "") for part in parts)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CapabilityError(f"Unexpected inference response shape from {entry.variant}") from e

    def close(self) -> None:
        self._client.close()


class CapabilityPool:
    """Retry-with-rotation over a shuffled list of capability entries.

    The cursor is shared by all callers of one pool. Two pools built from
    the same entries rotate independently.
    """

    def __init__(
        self,
        entries: Sequence[CapabilityEntry],
        backend: InferenceBackend,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        seed: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        name: str = "capability",
    ):
        if not entries:
            raise ValueError("Capability pool needs at least one entry")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._entries = list(entries)
        random.Random(seed).shuffle(self._entries)
        self.backend = backend
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.name = name
        self._sleep = sleep
        self._cursor = 0
        self._lock = threading.Lock()

    @classmethod
    def from_credentials(
        cls,
        credentials: Sequence[str],
        variants: Sequence[str],
        backend: InferenceBackend,
        **kwargs,
    ) -> "CapabilityPool":
        """Build the pool from every credential x variant combination."""
        entries = [
            CapabilityEntry(credential=c, variant=v)
            for c, v in itertools.product(credentials, variants)
        ]
        return cls(entries, backend, **kwargs)

    @property
    def entries(self) -> list[CapabilityEntry]:
        return list(self._entries)

    @property
    def cursor(self) -> int:
        with self._lock:
            return self._cursor

    def current(self) -> tuple[int, CapabilityEntry]:
        with self._lock:
            return self._cursor, self._entries[self._cursor]

    def _rotate(self, failed_index: int) -> None:
        with self._lock:
            # Another caller may have rotated past the failed entry already.
            if self._cursor == failed_index:
                self._cursor = (self._cursor + 1) % len(self._entries)

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** attempt), self.backoff_cap)

    def invoke(self, prompt: str) -> str:
        last_error: Optional[CapabilityError] = None
        for attempt in range(self.max_attempts):
            index, entry = self.current()
            try:
                return self.backend.generate(entry, prompt)
            except CapabilityOverloaded as e:
                last_error = e
                if attempt + 1 < self.max_attempts:
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        "%s: %s overloaded, backing off %.1fs (attempt %d/%d)",
                        self.name, entry.variant, delay, attempt + 1, self.max_attempts,
                    )
                    self._sleep(delay)
            except (CapabilityRateLimited, UnknownVariant) as e:
                last_error = e
                logger.warning(
                    "%s: %s unavailable (%s), rotating (attempt %d/%d)",
                    self.name, entry.variant, e, attempt + 1, self.max_attempts,
                )
                self._rotate(index)

        logger.error("%s: all %d attempts failed", self.name, self.max_attempts)
        raise CapabilityExhausted(self.max_attempts, last_error)
