"""
Sentinel error types.

Specific exceptions for each failure mode in the authorization pipeline,
so callers can decide what to surface, retry, or log.
"""

from __future__ import annotations

from typing import Optional


class SentinelError(Exception):
    """Base error for all Sentinel operations."""
    pass


class ConfigError(SentinelError):
    """Configuration value is missing or malformed."""
    pass


# Intent errors
class ParseFailure(SentinelError):
    """Free text could not be turned into a usable payment intent."""
    pass


# Capability errors
class CapabilityError(SentinelError):
    """Base error for external inference capability failures."""
    pass


class CapabilityOverloaded(CapabilityError):
    """Upstream is busy; retry the same entry after backing off."""
    pass


class CapabilityRateLimited(CapabilityError):
    """Credential is rate limited; rotate to the next entry."""
    pass


class UnknownVariant(CapabilityError):
    """Model variant is not served for this credential; rotate."""
    pass


class CapabilityExhausted(CapabilityError):
    """Every attempt in the retry budget failed."""
    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"All retries exhausted after {attempts} attempts")


# Policy errors
class PolicyError(SentinelError):
    """Base error for policy denials."""
    pass


class VelocityViolation(PolicyError):
    """Hourly volume limit would be exceeded."""
    def __init__(self, amount, used, limit):
        self.amount = amount
        self.used = used
        self.limit = limit
        super().__init__(
            f"VELOCITY VIOLATION: Hourly corporate limit of {limit} exceeded "
            f"({used} used, {amount} requested)"
        )


class PolicyViolation(PolicyError):
    """Policy review denied the intent."""
    pass


# Mandate errors
class MandateError(SentinelError):
    """Base error for mandate issues."""
    pass


class MandateExpired(MandateError):
    """Mandate has expired and can no longer be executed."""
    pass


class MandateSignatureError(MandateError):
    """Mandate signature or content hash does not verify."""
    pass


# Approval errors
class ApprovalError(SentinelError):
    """Base error for the human approval protocol."""
    pass


class NoPendingMandate(ApprovalError):
    """User has no mandate awaiting approval."""
    pass


class InvalidTransition(ApprovalError):
    """Action is not allowed from the session's current state."""
    def __init__(self, action: str, state: str):
        self.action = action
        self.state = state
        super().__init__(f"Cannot {action} while session is {state}")


class PinNotConfigured(ApprovalError):
    """Production approval requires a PIN and none is set."""
    pass


class PinError(ApprovalError):
    """PIN could not be set or changed."""
    pass


class AuthFailure(ApprovalError):
    """Incorrect PIN. Counted toward lockout."""
    def __init__(self, attempts_remaining: int, locked_until: Optional[float] = None):
        self.attempts_remaining = attempts_remaining
        self.locked_until = locked_until
        if locked_until is not None:
            message = "Incorrect PIN. Too many attempts, approval rejected and PIN locked"
        else:
            message = f"Incorrect PIN. {attempts_remaining} attempts remaining"
        super().__init__(message)


class LockedOut(ApprovalError):
    """PIN entry is locked. Not counted as an attempt."""
    def __init__(self, remaining_seconds: int):
        self.remaining_seconds = remaining_seconds
        minutes = max(1, -(-remaining_seconds // 60))
        super().__init__(f"PIN locked. Try again in {minutes} minute(s)")


class LivenessFailure(ApprovalError):
    """Spoken challenge did not match; mandate discarded."""
    pass


# Settlement errors
class SettlementError(SentinelError):
    """Base error for settlement failures."""
    pass


class SettlementFailure(SettlementError):
    """Transfer collaborator reported a failure. Not retried."""
    pass


class DuplicateSettlement(SettlementError):
    """Mandate was already settled or is being settled."""
    pass


# Contract stand-in errors
class EscrowError(SentinelError):
    """Escrow call reverted."""
    pass


class EscrowMismatch(EscrowError):
    """Revealed data does not hash to the stored commitment."""
    pass


class RegistryError(SentinelError):
    """Mandate registry call reverted."""
    pass
