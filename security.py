"""Encryption of buyer personal data (addresses, phone numbers) at rest.

``SENSITIVE_DATA_KEY`` holds one or more comma-separated Fernet keys. The first
key encrypts new values and every listed key is tried on decryption, so a
retired key stays listed until ``reencrypt_sensitive_value`` has moved its rows
onto the current one.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)

SENSITIVE_KEY_ENV = "SENSITIVE_DATA_KEY"
SENSITIVE_KEY_FILE = Path(__file__).with_name("sensitive_key.txt")

_sensitive_cipher: Optional[MultiFernet] = None


def _split_keys(raw: str) -> list[bytes]:
    return [part.strip().encode("utf-8") for part in raw.replace("\n", ",").split(",") if part.strip()]


def _load_sensitive_keys() -> list[bytes]:
    """Read the key ring from the environment, then the key file, else create one."""

    keys = _split_keys(os.getenv(SENSITIVE_KEY_ENV, ""))
    if keys:
        return keys
    if SENSITIVE_KEY_FILE.exists():
        keys = _split_keys(SENSITIVE_KEY_FILE.read_text(encoding="utf-8"))
        if keys:
            return keys

    key = Fernet.generate_key()
    SENSITIVE_KEY_FILE.write_bytes(key)
    logger.warning("No %s configured; generated a new key in %s", SENSITIVE_KEY_ENV, SENSITIVE_KEY_FILE)
    return [key]


def _get_sensitive_cipher() -> MultiFernet:
    global _sensitive_cipher
    if _sensitive_cipher is None:
        try:
            ciphers = [Fernet(key) for key in _load_sensitive_keys()]
        except ValueError as exc:
            raise RuntimeError(f"{SENSITIVE_KEY_ENV} must list url-safe base64 Fernet keys.") from exc
        _sensitive_cipher = MultiFernet(ciphers)
    return _sensitive_cipher


def reset_sensitive_cipher() -> None:
    """Drop the cached key ring so the next call reads the configuration again."""

    global _sensitive_cipher
    _sensitive_cipher = None


def encrypt_sensitive_value(value: Optional[str]) -> str:
    if value is None:
        value = ""
    return _get_sensitive_cipher().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_sensitive_value(value: Optional[str]) -> str:
    """Decrypt a stored value with any key on the ring.

    Values that are not Fernet tokens (rows written before encryption was
    switched on) come back unchanged.
    """

    if not value:
        return ""
    try:
        return _get_sensitive_cipher().decrypt(str(value).encode("utf-8")).decode("utf-8")
    except InvalidToken:
        return str(value)


def reencrypt_sensitive_value(value: Optional[str]) -> Optional[str]:
    """Re-encrypt a stored value under the current key.

    Plain-text values are encrypted for the first time. Empty values stay None.
    """

    if not value:
        return None
    cipher = _get_sensitive_cipher()
    token = str(value).encode("utf-8")
    try:
        rotated = cipher.rotate(token)
    except InvalidToken:
        rotated = cipher.encrypt(token)
    return rotated.decode("utf-8")


def encrypt_fields(
    fields: Mapping[str, object],
    names: Iterable[str],
    *,
    nullable: Iterable[str] = (),
) -> dict[str, Optional[str]]:
    """Encrypt the entries of ``fields`` listed in ``names``.

    Missing or None entries are skipped, except for ``nullable`` names that are
    present: those are cleared to None when blank.
    """

    clearable = set(nullable)
    encrypted: dict[str, Optional[str]] = {}
    for name in names:
        if name not in fields:
            continue
        value = fields[name]
        if name in clearable and (value is None or not str(value).strip()):
            encrypted[name] = None
        elif value is not None:
            encrypted[name] = encrypt_sensitive_value(str(value))
    return encrypted


def decrypt_fields(row: object, names: Iterable[str]) -> dict[str, Optional[str]]:
    """Decrypt the ``names`` attributes of a model, keeping NULL columns as None."""

    return {
        name: decrypt_sensitive_value(getattr(row, name)) if getattr(row, name) is not None else None
        for name in names
    }
