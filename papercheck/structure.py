"""Structure extraction: oracle-first, with a deterministic heuristic fallback."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

from papercheck.llm_client import LLMClient, LLMServiceError
from papercheck.models import DocumentStructure, Section
from papercheck.prompts import SYSTEM_PROMPT, build_structure_prompt

log = logging.getLogger(__name__)

UNTITLED = "Untitled Document"
DEFAULT_SECTION = "Content"

CANONICAL_SECTIONS = frozenset(
    {
        "introduction",
        "background",
        "related work",
        "methods",
        "materials and methods",
        "methodology",
        "results",
        "results and discussion",
        "discussion",
        "conclusion",
        "conclusions",
        "acknowledgements",
        "acknowledgments",
        "references",
        "keywords",
    }
)

_MARKDOWN_HEADING = re.compile(r"^#{1,6}\s+")
_LATEX_HEADING = re.compile(r"^\\(?:sub)*section\*?\{(?P<name>[^}]*)\}")
_NUMBERED_HEADING = re.compile(r"^\d+(?:\.\d+)*\.?\s+(?P<name>\S.*)$")
_ROMAN_HEADING = re.compile(r"^[IVXLC]+\.\s+(?P<name>\S.*)$")
_ABSTRACT_LINE = re.compile(r"^abstract\b\s*[:.\-]?\s*(?P<rest>.*)$", re.IGNORECASE)
_KEYWORDS_LINE = re.compile(r"^(?:key\s*words|keywords|index terms)\b", re.IGNORECASE)


def _strip_markup(line: str) -> str:
    text = _MARKDOWN_HEADING.sub("", line.strip())
    latex = _LATEX_HEADING.match(text)
    if latex:
        text = latex.group("name")
    return text.replace("**", "").replace("__", "").strip()


def is_heading(line: str) -> bool:
    """Heuristic: does this single line look like a section heading?"""
    stripped = line.strip()
    if not stripped or len(stripped) > 120:
        return False
    if _MARKDOWN_HEADING.match(stripped) or _LATEX_HEADING.match(stripped):
        return True

    bare = _strip_markup(stripped).rstrip(":").strip()
    if not bare:
        return False
    if bare.lower() in CANONICAL_SECTIONS:
        return True

    words = bare.split()
    if len(words) > 12 or bare.endswith((".", ",", ";")):
        return False
    if _NUMBERED_HEADING.match(bare) or _ROMAN_HEADING.match(bare):
        return True
    letters = [ch for ch in bare if ch.isalpha()]
    return len(letters) >= 4 and bare.isupper()


def _heading_name(line: str) -> str:
    bare = _strip_markup(line).rstrip(":").strip()
    for pattern in (_NUMBERED_HEADING, _ROMAN_HEADING):
        match = pattern.match(bare)
        if match:
            bare = match.group("name").strip()
            break
    return bare or DEFAULT_SECTION


class _FallbackParser:
    """Line-oriented state machine behind fallback_structure."""

    def __init__(self) -> None:
        self.abstract: list[str] = []
        self.sections: list[tuple[str, list[str]]] = []
        self.in_abstract = False
        self.buffer: list[str] = []

    def flush(self) -> None:
        paragraph = " ".join(part.strip() for part in self.buffer).strip()
        self.buffer = []
        if not paragraph:
            return
        if self.in_abstract:
            self.abstract.append(paragraph)
            return
        if not self.sections:
            self.sections.append((DEFAULT_SECTION, []))
        self.sections[-1][1].append(paragraph)

    def feed(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            self.flush()
            return

        bare = _strip_markup(stripped)
        abstract = _ABSTRACT_LINE.match(bare)
        if abstract and (not abstract.group("rest") or bare[len("abstract")] in ":.-"):
            self.flush()
            self.in_abstract = True
            if abstract.group("rest"):
                self.buffer.append(abstract.group("rest"))
            return
        if _KEYWORDS_LINE.match(bare):
            self.flush()
            self.in_abstract = False
            return
        if is_heading(stripped):
            self.flush()
            self.in_abstract = False
            self.sections.append((_heading_name(stripped), []))
            return
        self.buffer.append(stripped)


def fallback_structure(raw_text: str) -> DocumentStructure:
    """
    Deterministic structure for any input.

    The first non-empty line is the title; an "Abstract" line opens the abstract
    until the next heading; everything else is split into sections at headings
    and into paragraphs at blank lines. The result always has a non-empty title
    and at least one section holding at least one paragraph.
    """
    lines = (raw_text or "").replace("\r\n", "\n").replace("\r", "\n").split("\n")
    first = next((i for i, line in enumerate(lines) if line.strip()), None)
    if first is None:
        return DocumentStructure(
            title=UNTITLED,
            sections=(Section(name=DEFAULT_SECTION, paragraphs=(UNTITLED,)),),
        )

    title = _strip_markup(lines[first]) or UNTITLED
    parser = _FallbackParser()
    for line in lines[first + 1 :]:
        parser.feed(line)
    parser.flush()

    abstract = "\n\n".join(parser.abstract)
    sections = tuple(
        Section(name=name, paragraphs=tuple(paragraphs))
        for name, paragraphs in parser.sections
        if paragraphs
    )
    if not sections:
        sections = (Section(name=DEFAULT_SECTION, paragraphs=(abstract or title,)),)
    return DocumentStructure(title=title, abstract=abstract, sections=sections)


def _paragraph_text(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("text", "")
    return str(value or "").strip()


def structure_from_payload(payload: dict[str, Any], raw_text: str = "") -> DocumentStructure:
    """Normalizes an oracle reply; drops empty and duplicated paragraphs."""
    title = _strip_markup(str(payload.get("title") or ""))
    abstract = _paragraph_text(payload.get("abstract"))

    seen: set[str] = set()
    sections: list[Section] = []
    for entry in payload.get("sections") or []:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or entry.get("title") or "").strip() or DEFAULT_SECTION
        paragraphs: list[str] = []
        for value in entry.get("paragraphs") or []:
            text = _paragraph_text(value)
            if text and text not in seen:
                seen.add(text)
                paragraphs.append(text)
        if paragraphs:
            sections.append(Section(name=name, paragraphs=tuple(paragraphs)))

    if not title:
        title = fallback_structure(raw_text).title
    return DocumentStructure(title=title, abstract=abstract, sections=tuple(sections))


async def extract_structure(raw_text: str, llm: LLMClient) -> DocumentStructure:
    """Asks the oracle for the structure; never raises, falls back on any failure."""
    try:
        payload = await llm.generate_json(build_structure_prompt(raw_text), system=SYSTEM_PROMPT)
        structure = structure_from_payload(payload, raw_text)
    except LLMServiceError as exc:
        log.warning("Structure extraction oracle failed (%s); using heuristic fallback.", exc)
        return await asyncio.to_thread(fallback_structure, raw_text)
    except ValueError as exc:
        log.warning("Structure extraction reply unusable (%s); using heuristic fallback.", exc)
        return await asyncio.to_thread(fallback_structure, raw_text)

    if structure.paragraph_count == 0:
        log.warning("Structure extraction returned no paragraphs; using heuristic fallback.")
        return await asyncio.to_thread(fallback_structure, raw_text)
    log.info(
        "Extracted structure: %d sections, %d paragraphs",
        len(structure.sections),
        structure.paragraph_count,
    )
    return structure
