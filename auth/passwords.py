"""
auth/passwords.py -- Password policy validation and strength scoring.

Pure functions over strings: no I/O, no hashing (see auth/hashing.py).

validate() reports every violated rule at once rather than stopping at the
first, so a signup form can show the complete list. The score is advisory
only -- is_valid depends on the error list alone.

Common-password matching is a case-insensitive substring test in both
directions ("password123!" contains "password123"; "admi" is contained in
"admin"). The list omits four-letter fragments such as "pass" and "test":
matching them as substrings rejects strong passphrases like "Str0ng!Pass1".
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

COMMON_PASSWORDS: tuple[str, ...] = (
    "password",
    "password1",
    "password123",
    "123456",
    "123456789",
    "1234567890",
    "qwerty",
    "abc123",
    "admin",
    "admin123",
    "administrator",
    "letmein",
    "welcome",
    "monkey",
    "dragon",
    "master",
    "hello",
    "login",
    "guest",
    "sample",
    "iloveyou",
    "sunshine",
)

SEQUENCES: tuple[str, ...] = ("abcdefghijklmnopqrstuvwxyz", "0123456789", "qwertyuiop")

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")
_SPECIAL = re.compile(r"[!@#$%^&*(),.?\":{}|<>\-_=+\[\];'/\\~`]")


@dataclass(frozen=True)
class PasswordValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    score: int = 0


class PasswordPolicy:
    """Configurable password rules.

    Usage:
        policy = PasswordPolicy(min_length=10)
        result = policy.validate("Tr0ub4dor&3xtra!", {"email": "a@example.com", "name": "Ann Lee"})
        result.is_valid, result.errors, result.score
    """

    def __init__(
        self,
        min_length: int = 8,
        require_uppercase: bool = True,
        require_lowercase: bool = True,
        require_numbers: bool = True,
        require_special: bool = True,
        forbid_common: bool = True,
        forbid_user_info: bool = True,
    ) -> None:
        self.min_length = min_length
        self.require_uppercase = require_uppercase
        self.require_lowercase = require_lowercase
        self.require_numbers = require_numbers
        self.require_special = require_special
        self.forbid_common = forbid_common
        self.forbid_user_info = forbid_user_info

    @classmethod
    def from_settings(cls, settings) -> PasswordPolicy:
        return cls(
            min_length=settings.password_min_length,
            require_uppercase=settings.password_require_uppercase,
            require_lowercase=settings.password_require_lowercase,
            require_numbers=settings.password_require_numbers,
            require_special=settings.password_require_special,
            forbid_common=settings.password_forbid_common,
            forbid_user_info=settings.password_forbid_user_info,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, password: str, user_info: dict | None = None) -> PasswordValidationResult:
        """Check password against every rule and compute a 0-100 strength score.

        Args:
            password:  Candidate plaintext.
            user_info: Optional {"email": ..., "name": ...}. The user-info rule
                       only runs when this is supplied.
        """
        errors: list[str] = []
        score = 0

        if len(password) < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters long")
        else:
            score += min(25, (len(password) - self.min_length) * 2)

        has_upper = bool(_UPPER.search(password))
        has_lower = bool(_LOWER.search(password))
        has_digit = bool(_DIGIT.search(password))
        has_special = bool(_SPECIAL.search(password))

        if self.require_uppercase and not has_upper:
            errors.append("Password must contain at least one uppercase letter")
        elif has_upper:
            score += 20

        if self.require_lowercase and not has_lower:
            errors.append("Password must contain at least one lowercase letter")
        elif has_lower:
            score += 20

        if self.require_numbers and not has_digit:
            errors.append("Password must contain at least one number")
        elif has_digit:
            score += 20

        if self.require_special and not has_special:
            errors.append("Password must contain at least one special character")
        elif has_special:
            score += 15

        if self.forbid_common and is_common_password(password):
            errors.append("Password is too common, please choose a more unique password")
            score -= 30

        if self.forbid_user_info and user_info and contains_user_info(password, user_info):
            errors.append("Password should not contain your email or name")
            score -= 20

        if has_repeated_characters(password):
            score -= 10
        if has_sequential_characters(password):
            score -= 10

        if len(password) >= 12:
            score += 10
        if len(password) >= 16:
            score += 10

        score = max(0, min(100, score))
        return PasswordValidationResult(is_valid=not errors, errors=errors, score=score)

    def get_suggestions(self, password: str) -> list[str]:
        """Human-readable remediation hints. UX only -- never used for gating."""
        suggestions: list[str] = []
        if len(password) < 12:
            suggestions.append("Make your password longer (12+ characters recommended)")
        if not _UPPER.search(password):
            suggestions.append("Add uppercase letters")
        if not _LOWER.search(password):
            suggestions.append("Add lowercase letters")
        if not _DIGIT.search(password):
            suggestions.append("Add numbers")
        if not _SPECIAL.search(password):
            suggestions.append("Add special characters (!@#$%^&*)")
        if has_repeated_characters(password):
            suggestions.append("Avoid repeating characters")
        if has_sequential_characters(password):
            suggestions.append("Avoid sequential characters (abc, 123)")
        if is_common_password(password):
            suggestions.append("Avoid common passwords")
        return suggestions


def strength_label(score: int) -> str:
    if score >= 80:
        return "Very Strong"
    if score >= 60:
        return "Strong"
    if score >= 40:
        return "Good"
    if score >= 20:
        return "Weak"
    return "Very Weak"


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def is_common_password(password: str) -> bool:
    lowered = password.lower()
    return any(common in lowered or lowered in common for common in COMMON_PASSWORDS)


def contains_user_info(password: str, user_info: dict) -> bool:
    """True if password contains the email local part or a name token (>= 3 chars each)."""
    lowered = password.lower()

    email = user_info.get("email")
    if email:
        local_part = email.split("@")[0].lower()
        if len(local_part) >= 3 and local_part in lowered:
            return True

    name = user_info.get("name")
    if name:
        for part in name.lower().split():
            if len(part) >= 3 and part in lowered:
                return True

    return False


def has_repeated_characters(password: str) -> bool:
    """True for three identical characters in a row ("aaa", "111")."""
    return any(password[i] == password[i + 1] == password[i + 2] for i in range(len(password) - 2))


def has_sequential_characters(password: str) -> bool:
    """True for a three-character run of a known sequence, forwards or backwards."""
    lowered = password.lower()
    for i in range(len(lowered) - 2):
        chunk = lowered[i : i + 3]
        for sequence in SEQUENCES:
            if chunk in sequence or chunk in sequence[::-1]:
                return True
    return False
