"""
Runtime configuration.

Every setting has a default suitable for local simulation and can be
overridden from the environment. ``SentinelConfig.from_env()`` is the only
place that reads environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional

from .errors import ConfigError
from .money import parse_amount
from .storage import DEFAULT_DATA_DIR


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEFAULT_MODEL_VARIANTS = (
    "gemini-2.5-flash",
    "gemini-2.5-flash-lite",
    "gemini-2.0-flash-exp",
)
DEFAULT_RPC_URL = "https://ethereum-sepolia.publicnode.com"
DEFAULT_TOKEN_ADDRESS = "0x8ccedbAe4916b79da7F3F612EfB2EB93A2bFD6cF"
DEFAULT_CHAIN_ID = 84532


@dataclass
class SentinelConfig:
    """Settings shared by every pipeline component."""

    data_dir: Path = DEFAULT_DATA_DIR
    database_url: Optional[str] = None
    api_keys: list[str] = field(default_factory=list)
    model_variants: list[str] = field(default_factory=lambda: list(DEFAULT_MODEL_VARIANTS))
    max_attempts: int = 14
    backoff_base: float = 1.0
    backoff_cap: float = 30.0
    hourly_limit: Decimal = Decimal("1000000")
    fallback_threshold: Decimal = Decimal("100")
    fallback_auto_approve: bool = True
    policy_path: Optional[Path] = None
    agent_key: Optional[str] = None
    agent_id: str = "Sentinel_Agent_01"
    chain_id: int = DEFAULT_CHAIN_ID
    registry_address: str = ZERO_ADDRESS
    rpc_url: str = DEFAULT_RPC_URL
    token_address: str = DEFAULT_TOKEN_ADDRESS
    http_timeout: float = 30.0
    audit_hmac_key: Optional[str] = None
    session_ttl_seconds: int = 3600
    max_pin_attempts: int = 5
    lockout_seconds: int = 300
    quorum: int = 2
    reject_weak_pins: bool = False

    @property
    def sqlite_path(self) -> Path:
        return self.data_dir / "sentinel.db"

    @property
    def audit_key_path(self) -> Path:
        return self.data_dir / ".secrets" / "audit_hmac.key"

    @property
    def registry_path(self) -> Path:
        return self.data_dir / "registry_state.json"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "SentinelConfig":
        env = os.environ if environ is None else environ
        config = cls()

        home = env.get("SENTINEL_HOME")
        if home:
            config.data_dir = Path(home).expanduser()

        db_url = env.get("DATABASE_URL")
        if db_url:
            if db_url.startswith("postgres://"):
                db_url = db_url.replace("postgres://", "postgresql://", 1)
            config.database_url = db_url

        keys = []
        for name in ["GEMINI_API_KEY"] + [f"GEMINI_API_KEY_{i}" for i in range(1, 7)]:
            value = env.get(name, "").strip()
            if value and value not in keys:
                keys.append(value)
        config.api_keys = keys

        variants = env.get("SENTINEL_MODEL_VARIANTS")
        if variants:
            config.model_variants = [v.strip() for v in variants.split(",") if v.strip()]

        config.max_attempts = _int(env, "SENTINEL_MAX_ATTEMPTS", config.max_attempts)
        config.hourly_limit = _amount(env, "SENTINEL_HOURLY_LIMIT", config.hourly_limit)
        config.fallback_threshold = _amount(env, "SENTINEL_FALLBACK_THRESHOLD", config.fallback_threshold)
        config.fallback_auto_approve = _flag(env, "SENTINEL_FALLBACK_AUTO_APPROVE", config.fallback_auto_approve)
        config.chain_id = _int(env, "SENTINEL_CHAIN_ID", config.chain_id)
        config.http_timeout = _float(env, "SENTINEL_HTTP_TIMEOUT", config.http_timeout)
        config.session_ttl_seconds = _int(env, "SENTINEL_SESSION_TTL", config.session_ttl_seconds)
        config.reject_weak_pins = _flag(env, "SENTINEL_REJECT_WEAK_PINS", config.reject_weak_pins)

        policy = env.get("SENTINEL_POLICY_PATH")
        if policy:
            config.policy_path = Path(policy).expanduser()

        config.agent_key = env.get("SENTINEL_AGENT_KEY") or None
        config.registry_address = env.get("MANDATE_REGISTRY_ADDRESS") or config.registry_address
        config.rpc_url = env.get("SENTINEL_RPC_URL") or config.rpc_url
        config.token_address = env.get("SENTINEL_TOKEN_ADDRESS") or config.token_address
        config.audit_hmac_key = env.get("SENTINEL_AUDIT_HMAC_KEY") or None

        if config.max_attempts <= 0:
            raise ConfigError("SENTINEL_MAX_ATTEMPTS must be > 0")
        if config.hourly_limit <= 0:
            raise ConfigError("SENTINEL_HOURLY_LIMIT must be > 0")
        return config


def _int(env, name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _float(env, name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _amount(env, name: str, default: Decimal) -> Decimal:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return parse_amount(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _flag(env, name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}
