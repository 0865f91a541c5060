"""
auth/tokens.py -- Password hashing and session key utilities.

Security design decisions:
  Passwords: bcrypt, used directly. Bcrypt is the right choice for
       low-entropy secrets (passwords) because its cost factor makes
       brute-force expensive. The DUMMY_HASH constant enables timing
       equalization in AccountDirectory.authenticate() so response time does
       not reveal whether a username exists [C1].

  Session keys: 50 characters drawn with secrets.choice() from a 54-letter
       URL-safe alphabet (~287 bits). The generator is the OS CSPRNG -- a
       seeded PRNG would make keys predictable from the process start time.

  Session key storage: HMAC-SHA256(SECRET_KEY, raw_key). Deterministic, so
       lookup is O(1) through the primary key; bcrypt's slowness is
       unnecessary for high-entropy keys. The raw key is never persisted.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup [M6].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import string

import bcrypt

from core.config import get_settings

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

SESSION_KEY_LENGTH = 50
SESSION_KEY_ALPHABET = string.ascii_letters + "-_"

# bcrypt only looks at the first 72 bytes of its input.
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
#
# passlib's internal wrap-bug detection creates a password longer than 72
# bytes, which bcrypt 4.x rejects with an explicit error. Direct bcrypt usage
# is simpler and has no compatibility shim.
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are rejected before they get here
    (AccountDirectory.register / update_password check MAX_PASSWORD_BYTES).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always call verify_password() even when the
# username does not exist.
DUMMY_HASH: str = hash_password("appstore_timing_dummy")


# ---------------------------------------------------------------------------
# Session keys
# ---------------------------------------------------------------------------


def generate_session_key() -> str:
    """Return a new fixed-length session key from the OS CSPRNG."""
    return "".join(secrets.choice(SESSION_KEY_ALPHABET) for _ in range(SESSION_KEY_LENGTH))


def hash_session_key(raw_key: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_key) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_key.encode(),
        hashlib.sha256,
    ).hexdigest()


def key_prefix(raw_key: str) -> str:
    """First 8 characters of a session key, safe to write to logs."""
    return raw_key[:8]
