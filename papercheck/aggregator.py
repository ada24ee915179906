"""Merges evaluator output into the final, fully typed analysis result."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

from papercheck.models import (
    SEVERITY_RANK,
    AnalysisResult,
    AssessmentOutcome,
    DocumentStructure,
    Evaluation,
    EvaluationFlags,
    Issue,
    SectionEvaluation,
    Statistics,
)
from papercheck.structure import UNTITLED

EXCERPT_CHARS = 30


def _issues(
    abstract: Evaluation,
    sections: Iterable[SectionEvaluation],
    major_issues: Iterable[Issue],
) -> Iterable[Issue]:
    yield from abstract.issues
    for section in sections:
        for paragraph in section.paragraphs:
            yield from paragraph.issues
    yield from major_issues


def compute_statistics(
    abstract: Evaluation,
    sections: list[SectionEvaluation],
    major_issues: list[Issue],
) -> Statistics:
    counts = Counter(issue.severity for issue in _issues(abstract, sections, major_issues))
    return Statistics(
        critical=counts["critical"],
        major=counts["major"],
        minor=counts["minor"],
    )


def paragraph_location(section_name: str, number: int, text: str) -> str:
    excerpt = " ".join(text.split())[:EXCERPT_CHARS]
    return f'{section_name}: paragraph {number} (starts: "{excerpt}…")'


def prioritize_issues(
    abstract: Evaluation,
    sections: list[SectionEvaluation],
    major_issues: list[Issue],
) -> list[Issue]:
    """Document issues, then abstract, then paragraphs; stable-sorted by severity."""
    ordered: list[Issue] = list(major_issues)
    ordered.extend(issue.model_copy(update={"location": "Abstract"}) for issue in abstract.issues)
    for section in sections:
        for fallback, paragraph in enumerate(section.paragraphs, start=1):
            number = paragraph.position or fallback
            location = paragraph_location(section.name, number, paragraph.text)
            ordered.extend(
                issue.model_copy(update={"location": location}) for issue in paragraph.issues
            )
    return sorted(ordered, key=lambda issue: SEVERITY_RANK[issue.severity])


def aggregate(
    structure: DocumentStructure,
    abstract_eval: Evaluation,
    section_evals: list[SectionEvaluation],
    assessment: AssessmentOutcome | None,
    analysis_error: str | None = None,
) -> AnalysisResult:
    """Builds the result; statistics are always recomputed from the issues."""
    assessment = assessment or AssessmentOutcome()
    major_issues = [
        issue if issue.location else issue.model_copy(update={"location": "Document"})
        for issue in assessment.major_issues
    ]
    return AnalysisResult(
        title=structure.title or UNTITLED,
        abstract=abstract_eval,
        document_assessment=dict(assessment.document_assessment),
        major_issues=major_issues,
        overall_recommendations=list(assessment.overall_recommendations),
        statistics=compute_statistics(abstract_eval, section_evals, major_issues),
        sections=list(section_evals),
        prioritized_issues=prioritize_issues(abstract_eval, section_evals, major_issues),
        analysis_error=analysis_error,
    )


def degraded_result(error: str, title: str = UNTITLED, abstract: str = "") -> AnalysisResult:
    """A fully typed result for a run that could not complete."""
    return AnalysisResult(
        title=title or UNTITLED,
        abstract=Evaluation(
            text=abstract,
            summary="Analysis failed.",
            flags=EvaluationFlags.passing(),
        ),
        analysis_error=error,
    )
