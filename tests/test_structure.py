import asyncio
import json

from papercheck.llm_client import LLMClient, LLMResponse, OracleTimeoutError
from papercheck.structure import (
    DEFAULT_SECTION,
    UNTITLED,
    extract_structure,
    fallback_structure,
    is_heading,
)

PAPER = """# My Paper

Abstract
We study X. It matters.

1. Introduction
Scientific writing matters. We test a checker.

It works well on real text.

METHODS
We built a pipeline.

\\section{Results}
The pipeline found issues.
"""


class ReplyLLM(LLMClient):
    def __init__(self, reply: str = "", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls = 0

    async def generate(self, prompt: str, **kwargs) -> LLMResponse:
        del prompt, kwargs
        self.calls += 1
        if self.error is not None:
            raise self.error
        return LLMResponse(text=self.reply, input_tokens=0, output_tokens=0)


def _assert_total(structure) -> None:
    assert structure.title.strip()
    assert structure.sections
    assert any(paragraph.strip() for section in structure.sections for paragraph in section.paragraphs)


def test_is_heading_recognizes_common_forms() -> None:
    for line in (
        "Introduction",
        "MATERIALS AND METHODS",
        "2. Results",
        "3.1 Data collection",
        "IV. Discussion",
        "## Background",
        "\\section{Conclusion}",
        "**Methods**",
    ):
        assert is_heading(line), line


def test_is_heading_rejects_prose() -> None:
    for line in (
        "",
        "We study the effect of temperature on growth.",
        "1. We measured the samples twice.",
        "DNA",
        "x" * 200,
    ):
        assert not is_heading(line), line


def test_fallback_splits_title_abstract_sections_and_paragraphs() -> None:
    structure = fallback_structure(PAPER)
    assert structure.title == "My Paper"
    assert structure.abstract == "We study X. It matters."
    assert [section.name for section in structure.sections] == ["Introduction", "METHODS", "Results"]
    assert structure.sections[0].paragraphs == (
        "Scientific writing matters. We test a checker.",
        "It works well on real text.",
    )
    assert structure.paragraph_count == 4


def test_fallback_inline_abstract_and_keywords_line() -> None:
    text = "Title Here\nAbstract: Short summary.\nKeywords: a, b\n\nBody text without headings."
    structure = fallback_structure(text)
    assert structure.abstract == "Short summary."
    assert structure.sections[0].name == DEFAULT_SECTION
    assert structure.sections[0].paragraphs == ("Body text without headings.",)


def test_fallback_text_before_first_heading_becomes_content_section() -> None:
    structure = fallback_structure("Title\n\nLoose opening paragraph.\n\nIntroduction\nBody.")
    assert structure.sections[0].name == DEFAULT_SECTION
    assert structure.sections[0].paragraphs == ("Loose opening paragraph.",)
    assert structure.sections[1].name == "Introduction"


def test_fallback_drops_empty_sections() -> None:
    structure = fallback_structure("Title\n\nIntroduction\n\nMethods\nWe did things.")
    assert [section.name for section in structure.sections] == ["Methods"]


def test_fallback_is_total() -> None:
    for text in ("", "   \n\n", "Only a title", "Title\nAbstract\nJust the abstract.", "\x00\x00"):
        _assert_total(fallback_structure(text))
    assert fallback_structure("").title == UNTITLED
    assert fallback_structure("Only a title").sections[0].paragraphs == ("Only a title",)
    assert fallback_structure("T\nAbstract\nJust it.").sections[0].paragraphs == ("Just it.",)


def test_extract_structure_uses_oracle_reply() -> None:
    reply = json.dumps(
        {
            "title": "**Oracle Title**",
            "abstract": "An abstract.",
            "sections": [
                {"name": "Introduction", "paragraphs": ["First.", "  ", "Second."]},
                {"name": "Empty", "paragraphs": []},
                {"name": "Repeat", "paragraphs": ["First."]},
            ],
        }
    )
    structure = asyncio.run(extract_structure(PAPER, ReplyLLM(reply)))
    assert structure.title == "Oracle Title"
    assert [section.name for section in structure.sections] == ["Introduction"]
    assert structure.sections[0].paragraphs == ("First.", "Second.")


def test_extract_structure_falls_back_on_oracle_failure() -> None:
    llm = ReplyLLM(error=OracleTimeoutError("slow"))
    structure = asyncio.run(extract_structure(PAPER, llm))
    assert llm.calls == 1
    assert structure == fallback_structure(PAPER)


def test_extract_structure_falls_back_on_malformed_or_empty_reply() -> None:
    for reply in ("not json at all", '{"title": "T", "sections": []}', '{"title": "T", "sections": [{"name": "A", "paragraphs": ['):
        structure = asyncio.run(extract_structure(PAPER, ReplyLLM(reply)))
        assert structure == fallback_structure(PAPER)


class JsonOnlyLLM(LLMClient):
    """Serves structured replies only; plain text generation is unavailable."""

    def __init__(self, payload: dict) -> None:
        self.payload = payload
        self.prompts: list[str] = []

    async def generate(self, prompt: str, **kwargs) -> LLMResponse:
        raise AssertionError("Structure extraction should request JSON.")

    async def generate_json(self, prompt: str, **kwargs) -> dict:
        del kwargs
        self.prompts.append(prompt)
        return self.payload


def test_extract_structure_requests_a_json_reply() -> None:
    llm = JsonOnlyLLM({"title": "T", "sections": [{"name": "Results", "paragraphs": ["It works."]}]})
    structure = asyncio.run(extract_structure(PAPER, llm))
    assert len(llm.prompts) == 1
    assert structure.sections[0].paragraphs == ("It works.",)


def test_extract_structure_falls_back_on_blank_reply() -> None:
    llm = ReplyLLM("   ")
    assert asyncio.run(extract_structure(PAPER, llm)) == fallback_structure(PAPER)
    assert llm.calls == 1


def test_fallback_runs_off_the_event_loop(monkeypatch) -> None:
    seen: list[bool] = []

    def recording_fallback(raw_text: str):
        try:
            asyncio.get_running_loop()
            seen.append(False)
        except RuntimeError:
            seen.append(True)
        return fallback_structure(raw_text)

    monkeypatch.setattr("papercheck.structure.fallback_structure", recording_fallback)
    asyncio.run(extract_structure(PAPER, ReplyLLM(error=OracleTimeoutError("slow"))))
    assert seen == [True]
