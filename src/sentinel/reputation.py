"""Agent reputation: completed deals, negotiated savings, trust badge."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal

from .money import parse_amount

logger = logging.getLogger(__name__)


TIER_3_DEALS = 10
TIER_2_DEALS = 5


@dataclass(frozen=True)
class ReputationSnapshot:
    successful_deals: int
    total_saved: Decimal
    badge: str

    def to_dict(self) -> dict:
        return {
            "successful_deals": self.successful_deals,
            "total_saved": str(self.total_saved),
            "badge": self.badge,
        }


def trust_badge(successful_deals: int) -> str:
    if successful_deals > TIER_3_DEALS:
        return "Grandmaster Agent (Tier 3)"
    if successful_deals > TIER_2_DEALS:
        return "Verified Banker (Tier 2)"
    return "Probationary Agent (Tier 1)"


class ReputationTracker:
    """Counts audited deals. A failed audit costs one deal, never below zero."""

    def __init__(self):
        self._deals = 0
        self._saved = Decimal(0)
        self._lock = threading.Lock()

    def record(self, saved: Decimal | int | str, audit_passed: bool) -> ReputationSnapshot:
        with self._lock:
            if audit_passed:
                self._deals += 1
                self._saved += max(Decimal(0), parse_amount(saved))
                logger.info("Reputation up: %d deals, %s saved", self._deals, self._saved)
            else:
                self._deals = max(0, self._deals - 1)
                logger.info("Reputation penalized for failed audit: %d deals", self._deals)
            return ReputationSnapshot(self._deals, self._saved, trust_badge(self._deals))

    def snapshot(self) -> ReputationSnapshot:
        with self._lock:
            return ReputationSnapshot(self._deals, self._saved, trust_badge(self._deals))
