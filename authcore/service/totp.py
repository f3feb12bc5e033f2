"""Time-based one-time passwords (RFC 6238) and recovery codes.

Codes use HMAC-SHA1 so they match what standard authenticator apps display
for an ``otpauth://totp`` URI.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
import time
from typing import List, Optional
from urllib.parse import quote, urlencode

from authcore.logging import get_logger

logger = get_logger(__name__)

_RECOVERY_ALPHABET = "abcdefghijklmnopqrstuvwxyz234567"


def generate_secret(num_bytes: int = 20) -> str:
    """Return a fresh base32 secret without padding."""
    return base64.b32encode(os.urandom(num_bytes)).decode("utf-8").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    normalized = secret.strip().replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return None


def generate_totp(
    secret: str, timestamp: float, *, interval: int = 30, digits: int = 6
) -> str:
    """Code for the time step containing ``timestamp``; empty when the secret is unusable."""
    key = _decode_secret(secret)
    if not key:
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    window: int = 1,
    interval: int = 30,
    digits: int = 6,
    now: Optional[float] = None,
) -> bool:
    """Accept ``code`` if it matches the current step or one within ``window`` steps."""
    if not secret or not code:
        return False
    candidate = code.strip()
    if len(candidate) != digits or not (candidate.isascii() and candidate.isdigit()):
        return False
    reference = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_totp(
            secret, reference + offset * interval, interval=interval, digits=digits
        )
        if generated and hmac.compare_digest(generated, candidate):
            return True
    return False


def provisioning_uri(
    secret: str, username: str, *, issuer: str, interval: int = 30, digits: int = 6
) -> str:
    label = quote(f"{issuer}:{username}", safe=":@")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": digits,
            "period": interval,
        }
    )
    return f"otpauth://totp/{label}?{params}"


def generate_recovery_codes(count: int = 10) -> List[str]:
    """Distinct single-use codes shaped ``xxxxx-xxxxx``."""
    codes: List[str] = []
    while len(codes) < count:
        raw = "".join(secrets.choice(_RECOVERY_ALPHABET) for _ in range(10))
        code = f"{raw[:5]}-{raw[5:]}"
        if code not in codes:
            codes.append(code)
    return codes


def normalize_recovery_code(code: str) -> str:
    return code.strip().lower()
