"""TOTP code derivation and verification (RFC 6238 over RFC 4226 HOTP).

Secrets are handled as base32 text. They are canonicalized through the
lenient codec before reaching pyotp, so a secret copied with spaces or in
lowercase derives the same key bytes as the issued one.
"""

from __future__ import annotations

import math

import pyotp

from twofactor.security import base32
from twofactor.security.codes import constant_time_compare

STEP_SECONDS = 30
DIGITS = 6
VALID_WINDOW = 1


def generate_secret() -> str:
    """Return 160 bits of CSPRNG entropy as 32 base32 symbols."""
    return pyotp.random_base32(length=32)


def time_counter(unix_seconds: float, step_seconds: int = STEP_SECONDS) -> int:
    return math.floor(unix_seconds / step_seconds)


def compute_code(secret: str, counter: int) -> str:
    if counter < 0:
        raise ValueError('counter must be non-negative')
    return pyotp.HOTP(base32.canonicalize(secret), digits=DIGITS).at(counter)


def normalize_code(code: str) -> str:
    return ''.join(code.split())


def verify(
    secret: str,
    submitted_code: str,
    now: float,
    *,
    step_seconds: int = STEP_SECONDS,
    window: int = VALID_WINDOW,
) -> bool:
    """Accept ``submitted_code`` if it matches any step within ``window`` of ``now``.

    The submission must already be the exact zero-padded form: ``'123'`` is
    never read as ``'000123'``. Every candidate step is compared so the time
    taken does not depend on which step matched.
    """
    code = normalize_code(submitted_code)
    if len(code) != DIGITS or not (code.isascii() and code.isdigit()):
        return False
    current = time_counter(now, step_seconds)
    matched = False
    for drift in range(-window, window + 1):
        counter = current + drift
        if counter < 0:
            continue
        if constant_time_compare(compute_code(secret, counter), code):
            matched = True
    return matched


def provisioning_uri(secret: str, account: str, issuer: str, step_seconds: int = STEP_SECONDS) -> str:
    """Build the ``otpauth://totp/...`` URI authenticator apps scan from a QR code."""
    otp = pyotp.TOTP(base32.canonicalize(secret), digits=DIGITS, interval=step_seconds)
    return otp.provisioning_uri(name=account, issuer_name=issuer)
