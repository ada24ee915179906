import asyncio
import json

from papercheck.llm_client import LLMClient, LLMServiceError, MockOfflineClient
from papercheck.models import AnalysisResult
from papercheck.pipeline import analyze_text, persist_artifacts
from papercheck.storage import ArtifactStore

PAPER = (
    "My Paper\n\n"
    "Abstract\nWe study X.\n\n"
    "Introduction\nScientific writing matters. We test a checker. It works well.\n"
)
SID = "sub_1700000000000_0a1b2c3d"


class NoDocumentAssessmentLLM(MockOfflineClient):
    async def generate(self, prompt: str, **kwargs):
        if "TASK: DOCUMENT_ASSESSMENT" in prompt:
            raise LLMServiceError("provider unavailable")
        return await super().generate(prompt, **kwargs)


class SlowLLM(LLMClient):
    async def generate(self, prompt: str, **kwargs):
        del prompt, kwargs
        await asyncio.sleep(5)
        raise AssertionError("The deadline should have expired first.")


def test_analyze_text_offline_end_to_end() -> None:
    outcome = asyncio.run(analyze_text(PAPER, llm=MockOfflineClient()))
    assert not outcome.timed_out
    payload = outcome.result.to_payload()
    assert payload["title"] == "My Paper"
    assert payload["abstract"]["text"] == "We study X."
    assert [section["name"] for section in payload["sections"]] == ["Introduction"]
    assert payload["sections"][0]["paragraphs"][0]["text"] == (
        "Scientific writing matters. We test a checker. It works well."
    )
    assert payload["statistics"] == {"critical": 0, "major": 0, "minor": 0}
    assert len(payload["documentAssessment"]) == 7
    assert "analysisError" not in payload


def test_failed_document_assessment_degrades_with_typed_defaults() -> None:
    outcome = asyncio.run(analyze_text(PAPER, llm=NoDocumentAssessmentLLM()))
    result = outcome.result
    assert not outcome.timed_out
    assert result.analysis_error == "Document-level assessment could not be completed."
    assert result.document_assessment == {}
    assert result.major_issues == []
    assert result.overall_recommendations == []
    assert result.sections[0].paragraphs


def test_analysis_deadline_returns_degraded_result() -> None:
    outcome = asyncio.run(analyze_text(PAPER, llm=SlowLLM(), timeout_s=0.01))
    assert outcome.timed_out
    assert outcome.result.title == "My Paper"
    assert outcome.result.abstract.text == "We study X."
    assert outcome.result.analysis_error.startswith("Analysis timed out after")
    assert outcome.result.sections == []


def test_persist_artifacts_writes_json_and_report(tmp_path) -> None:
    result = asyncio.run(analyze_text(PAPER, llm=MockOfflineClient())).result
    store = ArtifactStore(tmp_path, ttl_s=60)
    saved = asyncio.run(persist_artifacts(store, SID, result))
    assert saved["json"].name == f"results-{SID}.json"
    assert saved["report"].name == f"report-{SID}.md"
    loaded = AnalysisResult.model_validate(json.loads(saved["json"].read_text(encoding="utf-8")))
    assert loaded == result
    assert saved["report"].read_text(encoding="utf-8").startswith("# Scientific Paper Structure Assessment")


def test_persist_artifacts_logs_write_failures(tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = ArtifactStore(blocker, ttl_s=60)
    result = asyncio.run(analyze_text(PAPER, llm=MockOfflineClient())).result
    assert asyncio.run(persist_artifacts(store, SID, result)) == {}
