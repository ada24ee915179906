"""End-to-end analysis: structure, evaluation, validation, aggregation, persistence."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from papercheck.aggregator import aggregate, degraded_result
from papercheck.evaluator import evaluate
from papercheck.llm_client import LLMClient, get_llm_client
from papercheck.models import AnalysisResult
from papercheck.report import render
from papercheck.rules import RuleCatalog, get_rule_catalog
from papercheck.storage import ArtifactStore
from papercheck.structure import extract_structure, fallback_structure
from papercheck.validator import completeness_problems

log = logging.getLogger(__name__)


@dataclass
class AnalysisOutcome:
    result: AnalysisResult
    timed_out: bool = False


async def _analyze(text: str, llm: LLMClient, catalog: RuleCatalog) -> AnalysisResult:
    structure = await extract_structure(text, llm)
    outcome = await evaluate(structure, catalog, llm)

    error = None
    if outcome.assessment is None:
        error = "Document-level assessment could not be completed."
    result = aggregate(structure, outcome.abstract, outcome.sections, outcome.assessment, error)

    problems = completeness_problems(result, structure)
    if problems:
        log.warning("Analysis incomplete: %s", "; ".join(problems))
        if error is None:
            result = result.model_copy(
                update={"analysis_error": f"Analysis incomplete: {'; '.join(problems)}."}
            )
    log.info(
        "Analysis finished: %d sections, statistics=%s",
        len(result.sections),
        result.statistics.model_dump(),
    )
    return result


async def analyze_text(
    text: str,
    llm: LLMClient | None = None,
    catalog: RuleCatalog | None = None,
    timeout_s: float | None = None,
) -> AnalysisOutcome:
    """Runs the whole analysis under one deadline; never raises for oracle trouble."""
    if timeout_s is None:
        from papercheck.config import ANALYSIS_TIMEOUT_S

        timeout_s = ANALYSIS_TIMEOUT_S
    llm = llm or get_llm_client()
    catalog = catalog or get_rule_catalog()

    try:
        result = await asyncio.wait_for(_analyze(text, llm, catalog), timeout=timeout_s)
    except asyncio.TimeoutError:
        log.warning("Analysis timed out after %.0f seconds", timeout_s)
        structure = fallback_structure(text)
        result = degraded_result(
            f"Analysis timed out after {timeout_s:.0f} seconds.",
            title=structure.title,
            abstract=structure.abstract,
        )
        return AnalysisOutcome(result=result, timed_out=True)
    return AnalysisOutcome(result=result)


async def persist_artifacts(
    store: ArtifactStore,
    submission_id: str,
    result: AnalysisResult,
) -> dict[str, Path]:
    """Writes the JSON result and the markdown report; write failures are logged only."""
    rendered = render(result)
    saved: dict[str, Path] = {}
    for key, kind, data, ext in (
        ("json", "results", rendered.json, "json"),
        ("report", "report", rendered.markdown, "md"),
    ):
        try:
            saved[key] = await store.save(kind, submission_id, data, ext)
        except OSError as exc:
            log.error("Could not save %s artifact for %s: %s", kind, submission_id, exc)
    return saved
