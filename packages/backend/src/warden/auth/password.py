"""Password hashing utilities.

Learn: bcrypt salts automatically; the hash string carries its own salt
and cost. Passwords are truncated to 72 bytes (bcrypt's limit), and the
API caps password length well below that.

dummy_hash() lets login run one bcrypt check even when the email is
unknown, so response time doesn't reveal which emails are registered.
"""

from functools import lru_cache

import bcrypt

BCRYPT_ROUNDS = 12


def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    """Hash a password with bcrypt."""
    pw_bytes = password.encode("utf-8")[:72]
    return bcrypt.hashpw(pw_bytes, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its bcrypt hash. Never raises."""
    try:
        pw_bytes = password.encode("utf-8")[:72]
        return bcrypt.checkpw(pw_bytes, password_hash.encode("utf-8"))
    except (ValueError, TypeError):
        return False


@lru_cache
def dummy_hash(rounds: int = BCRYPT_ROUNDS) -> str:
    """A throwaway hash at the same cost as real ones, computed once per cost."""
    return hash_password("warden-timing-equalizer", rounds=rounds)
