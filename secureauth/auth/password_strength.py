"""
Password strength scoring.

Scores are additive over independent checks and capped at 100. The
evaluator only gates registration; it plays no part in login.
"""
import re
from typing import List

from .models import PasswordStrength

STRONG_THRESHOLD = 80

_LOWER_RE = re.compile(r"[a-z]")
_UPPER_RE = re.compile(r"[A-Z]")
_DIGIT_RE = re.compile(r"\d")
_SYMBOL_RE = re.compile(r"[^A-Za-z0-9\s]")
_REPEAT_RE = re.compile(r"(.)\1{2,}")

# Frequently breached passwords; compared case-insensitively.
COMMON_PASSWORDS = frozenset({
    "password",
    "123456",
    "12345678",
    "123456789",
    "password123",
    "password1",
    "admin",
    "qwerty",
    "qwerty123",
    "letmein",
    "welcome",
    "monkey",
    "dragon",
    "master",
    "iloveyou",
    "abc123",
    "111111",
    "sunshine",
    "football",
    "baseball",
    "trustno1",
    "passw0rd",
    "p@ssw0rd",
    "changeme",
})


def score(password: str, strong_threshold: int = STRONG_THRESHOLD) -> PasswordStrength:
    """
    Score a candidate password.

    Args:
        password: Candidate password.
        strong_threshold: Minimum score considered strong.

    Returns:
        PasswordStrength with score 0..100, feedback in check order,
        and is_strong.
    """
    password = password or ""
    feedback: List[str] = []
    total = 0

    if len(password) >= 8:
        total += 15
    else:
        feedback.append("Password must be at least 8 characters long")

    if len(password) >= 12:
        total += 15

    if _LOWER_RE.search(password):
        total += 10
    else:
        feedback.append("Add lowercase letters")

    if _UPPER_RE.search(password):
        total += 15
    else:
        feedback.append("Add uppercase letters")

    if _DIGIT_RE.search(password):
        total += 15
    else:
        feedback.append("Add numbers")

    if _SYMBOL_RE.search(password):
        total += 20
    else:
        feedback.append("Add special characters")

    if password and not _REPEAT_RE.search(password):
        total += 10
    elif password:
        feedback.append("Avoid repeating characters")

    total = min(total, 100)
    return PasswordStrength(score=total, feedback=feedback, is_strong=total >= strong_threshold)


def is_common(password: str) -> bool:
    return (password or "").strip().lower() in COMMON_PASSWORDS


def strength_label(value: int) -> str:
    if value >= 80:
        return "Strong"
    if value >= 60:
        return "Good"
    if value >= 40:
        return "Fair"
    return "Weak"
