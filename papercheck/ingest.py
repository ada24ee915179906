"""Raw-text extraction for uploaded manuscripts."""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
import zipfile
from io import BytesIO
from pathlib import Path

import fitz

from papercheck.security import (
    IntakeError,
    sanitize_text,
    validate_char_count,
    validate_extension,
    validate_upload_size,
)

log = logging.getLogger(__name__)

_W_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"
_TEX_TITLE = re.compile(r"\\title\{(?P<title>[^}]*)\}")
_TEX_DROP = re.compile(
    r"^\s*\\(documentclass|usepackage|maketitle|begin\{document\}|end\{document\}"
    r"|author|date|label|bibliographystyle|bibliography)\b"
)


def _read_docx_bytes(raw: bytes) -> str:
    with zipfile.ZipFile(BytesIO(raw)) as zf:
        with zf.open("word/document.xml") as handle:
            root = ET.fromstring(handle.read())
    paragraphs = []
    for paragraph in root.iter(f"{_W_NS}p"):
        text = "".join(node.text or "" for node in paragraph.iter(f"{_W_NS}t")).strip()
        if text:
            paragraphs.append(text)
    return "\n\n".join(paragraphs)


def _read_pdf_bytes(raw: bytes) -> str:
    with fitz.open(stream=raw, filetype="pdf") as pdf:
        return "\n".join(page.get_text("text") for page in pdf)


def _read_tex(text: str) -> str:
    """Reduces LaTeX markup to lines the structure heuristics understand."""
    lines: list[str] = []
    for line in text.splitlines():
        if line.lstrip().startswith("%") or _TEX_DROP.match(line):
            continue
        title = _TEX_TITLE.search(line)
        if title:
            lines.append(title.group("title").strip())
            lines.append("")
            continue
        if "\\begin{abstract}" in line:
            lines.extend(["", "Abstract"])
            continue
        if "\\end{abstract}" in line:
            lines.append("")
            continue
        lines.append(line)
    return "\n".join(lines)


def extract_raw_text(filename: str, raw: bytes) -> str:
    ext = validate_extension(filename)
    try:
        if ext == ".docx":
            return _read_docx_bytes(raw)
        if ext == ".pdf":
            return _read_pdf_bytes(raw)
    except (zipfile.BadZipFile, KeyError, ET.ParseError, RuntimeError, ValueError) as exc:
        raise IntakeError(f"Could not extract text from {filename}: {exc}") from exc

    text = raw.decode("utf-8", errors="ignore")
    if ext == ".tex":
        return _read_tex(text)
    return text


def prepare_submission(filename: str, raw: bytes, text_override: str | None = None) -> str:
    """
    Validates an upload and returns the sanitized manuscript text.

    A client-supplied ``text_override`` replaces extraction when the client has
    already extracted the text itself.
    """
    validate_extension(filename)
    validate_upload_size(len(raw))
    text = text_override if text_override and text_override.strip() else extract_raw_text(filename, raw)
    cleaned, filtered = sanitize_text(text)
    if filtered:
        log.warning("Filtered %d suspicious lines from %s", filtered, filename)
    validate_char_count(cleaned)
    return cleaned


def load_document(path: str | Path) -> str:
    resolved = Path(path).expanduser().resolve()
    if not resolved.exists() or not resolved.is_file():
        raise FileNotFoundError(f"File not found: {resolved}")
    return prepare_submission(resolved.name, resolved.read_bytes())
