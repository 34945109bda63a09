"""
auth/hashing.py -- bcrypt password hashing and keyed token digests.

Security design decisions:
  Passwords: bcrypt, used directly rather than through passlib (passlib's
       wrap-bug detection trips bcrypt 4.x's 72-byte check). Bcrypt's cost factor
       is what makes offline brute force of low-entropy secrets expensive; the
       floor is 12 (enforced by core.config.Settings).

  Timing equalization [C1]: PasswordHasher computes a dummy hash at
       construction. Callers run verify() against it whenever no real hash
       exists (unknown email, OAuth-only account) or when the request is rate
       limited, so every failure branch costs one bcrypt comparison and
       response time does not reveal which branch was taken.

  Tokens: verification and session tokens are 256-bit random values, so a
       fast keyed digest is enough. HMAC-SHA256(SECRET_KEY, token) is stored;
       the digest is deterministic, which keeps lookup a single indexed
       equality match, and a database leak alone does not yield usable tokens.

Hashing is CPU-bound. It runs inside synchronous route handlers, which
Starlette executes on its worker thread pool, never on the event loop.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

import bcrypt

# bcrypt only looks at the first 72 bytes. The API layer caps passwords at 128
# characters; longer UTF-8 inputs are truncated here explicitly so behaviour
# does not depend on the bcrypt release in use.
_BCRYPT_MAX_BYTES = 72

TOKEN_BYTES = 32  # 256 bits


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


class PasswordHasher:
    """bcrypt hashing with a fixed cost and a precomputed timing dummy.

    Usage:
        hasher = PasswordHasher(rounds=12)
        hashed = hasher.hash("Str0ng!Pass1")
        hasher.verify("Str0ng!Pass1", hashed)   # True
        hasher.verify("anything", None)         # False, same cost as a real check
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Computed once so the first failed login is not measurably slower.
        self._dummy_hash = self.hash(secrets.token_hex(16))

    def hash(self, plain: str) -> str:
        return bcrypt.hashpw(_encode(plain), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str | None) -> bool:
        """Return True if plain matches hashed. Always performs one bcrypt comparison.

        hashed=None compares against the dummy hash and returns False.
        """
        if hashed is None:
            self._check(plain, self._dummy_hash)
            return False
        return self._check(plain, hashed)

    def burn(self, plain: str = "") -> None:
        """Spend one comparison's worth of time without checking anything."""
        self._check(plain, self._dummy_hash)

    @staticmethod
    def _check(plain: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
        except ValueError:
            # Malformed stored hash -- treat as a mismatch.
            return False


def generate_token() -> str:
    """Return a URL-safe 256-bit random token (43 characters)."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def digest_token(secret_key: str, raw_token: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as hex -- the only form ever stored."""
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()
