"""
Key Identity Codec: generation and lexical validation of license keys.

Key format: <PREFIX>-XXXXXX-XXXXXX-XXXXXX
    - 9 random bytes (72 bits) from ``secrets``, uppercase hex,
      split into three groups of six characters.

Generation does not consult the store; the store's document-id uniqueness
is the backstop against the (negligible) chance of a collision.
Validation is purely lexical and is done before any store I/O.
"""

import re
import secrets

from keyledger.core.errors import InvalidKeyFormat

KEY_PREFIX = "VORAHUB"
KEY_ENTROPY_BYTES = 9
KEY_GROUP_COUNT = 3
KEY_GROUP_LENGTH = 6

_GROUP = rf"[0-9A-F]{{{KEY_GROUP_LENGTH}}}"


def _pattern(prefix: str) -> re.Pattern:
    groups = "-".join([_GROUP] * KEY_GROUP_COUNT)
    return re.compile(rf"{re.escape(prefix)}-{groups}")


_DEFAULT_PATTERN = _pattern(KEY_PREFIX)


def generate_key(prefix: str = KEY_PREFIX) -> str:
    """Generate a fresh key, e.g. ``VORAHUB-3FA91C-0B7E22-D41A90``."""
    hexed = secrets.token_hex(KEY_ENTROPY_BYTES).upper()
    groups = [hexed[i:i + KEY_GROUP_LENGTH] for i in range(0, len(hexed), KEY_GROUP_LENGTH)]
    return f"{prefix}-{'-'.join(groups)}"


def validate_key_format(token: str, prefix: str = KEY_PREFIX) -> bool:
    """True when *token* is lexically a key: prefix, 3 groups of 6 uppercase hex chars."""
    if not isinstance(token, str):
        return False
    pattern = _DEFAULT_PATTERN if prefix == KEY_PREFIX else _pattern(prefix)
    return pattern.fullmatch(token) is not None


def normalize_key(raw: str) -> str:
    """Trim and uppercase user input, as the redeem form does."""
    return raw.strip().upper()


def parse_key(raw: str, prefix: str = KEY_PREFIX) -> str:
    """Normalize *raw* and validate it, raising InvalidKeyFormat on failure."""
    if not isinstance(raw, str):
        raise InvalidKeyFormat(detail="key must be a string")
    token = normalize_key(raw)
    if not validate_key_format(token, prefix):
        raise InvalidKeyFormat(detail=f"rejected token of length {len(token)}")
    return token
