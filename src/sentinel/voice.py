"""Voice collaborator interface and liveness challenge helpers."""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from typing import Protocol


CHALLENGE_WORDS = (
    "ALPHA", "BRAVO", "CHARLIE", "DELTA", "ECHO", "FOXTROT", "GOLF",
    "HOTEL", "INDIA", "JULIET", "KILO", "LIMA", "OSCAR", "SIERRA",
)
MIN_CONFIDENCE = 0.3

_NON_WORD_RE = re.compile(r"[^A-Z0-9]+")


@dataclass(frozen=True)
class Transcription:
    text: str
    verified: bool = True
    confidence: float = 1.0


class VoiceVerifier(Protocol):
    def transcribe(self, audio: bytes) -> Transcription: ...


def generate_challenge_phrase(words: int = 2) -> str:
    return " ".join(secrets.choice(CHALLENGE_WORDS) for _ in range(words))


def matches_challenge(transcript: str, phrase: str) -> bool:
    """Case-insensitive substring match of the phrase in the transcript."""
    needle = _normalize(phrase or "")
    if not needle:
        return False
    return needle in _normalize(transcript)


def _normalize(text: str) -> str:
    return _NON_WORD_RE.sub(" ", text.upper()).strip()
