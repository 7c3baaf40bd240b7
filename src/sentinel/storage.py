"""Local storage hardening helpers."""

from __future__ import annotations

import os
import secrets
from pathlib import Path


DEFAULT_DATA_DIR = Path.home() / ".sentinel"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def load_or_create_key(key_path: Path) -> bytes:
    """Read a hex secret from key_path, generating one on first use."""
    ensure_private_dir(key_path.parent)
    if key_path.exists() and key_path.stat().st_size > 0:
        return key_path.read_bytes().strip()
    key = secrets.token_hex(32).encode()
    key_path.write_bytes(key)
    ensure_private_file(key_path)
    return key
