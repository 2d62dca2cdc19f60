"""Validation of free-text user input before it reaches a prompt."""

from __future__ import annotations

import re

from .config import MAX_USER_INPUT_LENGTH
from .errors import ErrorCode, KBError

# Markers of attempts to override the prompt around the user's text
SUSPICIOUS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"ignore\s+(all\s+)?previous\s+instructions", re.IGNORECASE),
    re.compile(r"^\s*system\s*:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"\[INST\]", re.IGNORECASE),
    re.compile(r"<\|im_start\|>", re.IGNORECASE),
)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")


def validate_user_input(text: str, max_length: int = MAX_USER_INPUT_LENGTH) -> str:
    """Check and normalize a concept description.

    Strips control characters and collapses runs of whitespace.

    Raises:
        KBError: E101 if the input is empty, too long or looks like a
            prompt injection attempt.
    """
    if not text or not text.strip():
        raise KBError(ErrorCode.E101_INVALID_INPUT, "Input is empty")

    if len(text) > max_length:
        raise KBError(
            ErrorCode.E101_INVALID_INPUT,
            f"Input is {len(text)} characters; the limit is {max_length}",
            {"length": len(text), "max_length": max_length},
        )

    for pattern in SUSPICIOUS_PATTERNS:
        if pattern.search(text):
            raise KBError(
                ErrorCode.E101_INVALID_INPUT,
                "Input contains instructions aimed at the model",
                {"pattern": pattern.pattern},
            )

    cleaned = _CONTROL_CHARS.sub("", text)
    return _WHITESPACE.sub(" ", cleaned).strip()
