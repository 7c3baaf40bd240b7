"""Static directory of trusted payees."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RiskTier(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class VerifiedVendor:
    vendor_id: str
    name: str
    wallet_address: str
    risk_tier: RiskTier
    category: str
    api_endpoint: Optional[str] = None


VENDOR_DIRECTORY: tuple[VerifiedVendor, ...] = (
    VerifiedVendor(
        vendor_id="v_aws_01",
        name="AWS Web Services",
        wallet_address="0x742d35Cc6634C0532925a3b844Bc454e4438f44e",
        risk_tier=RiskTier.LOW,
        category="Infrastructure",
        api_endpoint="https://api.aws.amazon.com/billing",
    ),
    VerifiedVendor(
        vendor_id="v_google_02",
        name="Google Cloud Platform",
        wallet_address="0x8888888888888888888888888888888888888888",
        risk_tier=RiskTier.LOW,
        category="Infrastructure",
    ),
    VerifiedVendor(
        vendor_id="v_stripe_01",
        name="Stripe Payments",
        wallet_address="0x9999999999999999999999999999999999999999",
        risk_tier=RiskTier.LOW,
        category="Finance",
    ),
    VerifiedVendor(
        vendor_id="v_devshop_01",
        name="Acme Dev Shop",
        wallet_address="0x1234567890123456789012345678901234567890",
        risk_tier=RiskTier.MEDIUM,
        category="Services",
    ),
)


def find_vendor(
    query: str,
    directory: tuple[VerifiedVendor, ...] = VENDOR_DIRECTORY,
) -> Optional[VerifiedVendor]:
    """Exact id match or case-insensitive substring match on the name."""
    needle = query.strip().lower()
    if not needle:
        return None
    for vendor in directory:
        if vendor.vendor_id.lower() == needle or needle in vendor.name.lower():
            return vendor
    return None
