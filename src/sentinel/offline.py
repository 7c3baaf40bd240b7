"""
Offline inference backend.

Answers the resolver and auditor prompts with simple pattern rules so the
pipeline can run without network credentials (demo, local development).
"""

from __future__ import annotations

import json
import re

from .capability import CapabilityEntry
from .errors import CapabilityError

_REQUEST_RE = re.compile(r"^Request: (.+)$", re.MULTILINE)
_PRICE_RE = re.compile(r"CURRENT PRICE: ([\d.]+)")
_PURPOSE_RE = re.compile(r"^- Purpose: (.+)$", re.MULTILINE)
_RECIPIENT_RE = re.compile(r"^VENDOR: (.+)$", re.MULTILINE)
_PAY_RE = re.compile(
    r"(?:pay|send|transfer)\s+([\d.]+)\s*(?:mnee)?\s+to\s+(.+?)(?:\s+for\s+(.+?))?\s*$",
    re.IGNORECASE,
)

PROHIBITED_WORDS = ("gambling", "casino", "personal", "betting", "sanction")


class OfflineBackend:
    """Rule-based stand-in for the inference service."""

    def generate(self, entry: CapabilityEntry, prompt: str) -> str:
        if "Parse the following request" in prompt:
            return self._parse(prompt)
        if "Negotiate a price" in prompt:
            match = _PRICE_RE.search(prompt)
            return match.group(1) if match else ""
        if "Chief Forensic Auditor" in prompt:
            return self._review(prompt)
        if "Forensic Intelligence Agent" in prompt:
            match = _RECIPIENT_RE.search(prompt)
            name = match.group(1) if match else "unknown"
            return (
                "Forensic Audit Complete\n"
                f"Entity: {name}\n"
                "Risk Score: 60 (Medium)\n"
                "Confidence: 40%\n"
                "Findings:\n"
                "- No offline history for this entity.\n"
                "- No sanctions data available offline.\n"
                "- Entity is not in the trusted vendor directory."
            )
        raise CapabilityError("Offline backend cannot answer this prompt")

    def _parse(self, prompt: str) -> str:
        match = _REQUEST_RE.search(prompt)
        if not match:
            return "{}"
        text = json.loads(match.group(1))
        pay = _PAY_RE.search(text.strip().rstrip("."))
        if not pay:
            return "{}"
        amount, recipient, purpose = pay.groups()
        return json.dumps({
            "recipient": recipient.strip(),
            "amount": float(amount),
            "currency": "MNEE",
            "purpose": (purpose or "").strip(),
            "ttl_hours": 24,
            "requires_multisig": "multisig" in text.lower(),
        })

    def _review(self, prompt: str) -> str:
        match = _PURPOSE_RE.search(prompt)
        purpose = json.loads(match.group(1)).lower() if match else ""
        for word in PROHIBITED_WORDS:
            if word in purpose:
                return json.dumps({
                    "approved": False,
                    "reason": f"Title: Prohibited purpose | Explanation: '{word}' falls under Section 2.",
                    "riskScore": 85,
                })
        return json.dumps({
            "approved": True,
            "reason": "Title: Compliant | Explanation: Purpose matches allowed business spend.",
            "riskScore": 10,
        })
