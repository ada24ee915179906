"""Intake validation and prompt-injection filtering for uploaded manuscripts."""

from __future__ import annotations

import re
from pathlib import Path

from papercheck.config import MAX_CHAR_COUNT, MAX_UPLOAD_MB

ALLOWED_EXTENSIONS = {".docx", ".txt", ".md", ".tex", ".pdf"}

_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(all\s+)?previous\s+instructions", re.IGNORECASE),
    re.compile(r"ignore\s+the\s+above", re.IGNORECASE),
    re.compile(r"disregard\s+(all\s+)?(prior|previous)\s+(rules|instructions)", re.IGNORECASE),
    re.compile(r"reveal\s+(your\s+)?(system\s+prompt|instructions)", re.IGNORECASE),
    re.compile(r"developer\s+message", re.IGNORECASE),
    re.compile(r"you\s+are\s+chatgpt", re.IGNORECASE),
    re.compile(r"jailbreak", re.IGNORECASE),
    re.compile(r"mark\s+(every|all)\s+(flag|check|criteri\w*)\s+(as\s+)?(true|passed)", re.IGNORECASE),
    re.compile(r"<<<\s*(END\s+)?UNIT\b", re.IGNORECASE),
]


class IntakeError(ValueError):
    """The submission is rejected before analysis (HTTP 400)."""


class PayloadTooLargeError(IntakeError):
    """The submission exceeds the upload size cap (HTTP 413)."""


def validate_extension(filename: str) -> str:
    ext = Path(filename or "").suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        allowed = ", ".join(sorted(ALLOWED_EXTENSIONS))
        raise IntakeError(f"Unsupported file extension '{ext}'. Allowed: {allowed}.")
    return ext


def max_upload_bytes() -> int:
    return MAX_UPLOAD_MB * 1024 * 1024


def validate_upload_size(size_bytes: int) -> None:
    if size_bytes > max_upload_bytes():
        raise PayloadTooLargeError(f"File exceeds size limit ({MAX_UPLOAD_MB} MB).")


def validate_char_count(text: str) -> None:
    if not text or not text.strip():
        raise IntakeError("No text could be extracted from the submission.")
    if len(text) > MAX_CHAR_COUNT:
        raise IntakeError(
            f"Document is too long ({len(text)} characters). "
            f"Maximum supported length is {MAX_CHAR_COUNT} characters."
        )


def sanitize_text(text: str) -> tuple[str, int]:
    """
    Returns sanitized text and number of filtered suspicious lines.
    """
    clean_lines: list[str] = []
    filtered = 0
    for line in text.splitlines():
        if any(pattern.search(line) for pattern in _INJECTION_PATTERNS):
            filtered += 1
            continue
        clean_lines.append(line)
    sanitized = "\n".join(clean_lines).replace("\x00", " ").strip()
    return sanitized, filtered
