"""Markdown and JSON renderings of an analysis result."""

from __future__ import annotations

import json
from dataclasses import dataclass

from papercheck.models import AnalysisResult, Evaluation, Issue
from papercheck.rules import ASSESSMENT_CRITERIA

# flag -> (label, passing text, failing text)
FLAG_LABELS: dict[str, tuple[str, str, str]] = {
    "cccStructure": ("Context-Content-Conclusion", "Yes", "No"),
    "sentenceQuality": ("Sentence Quality", "Good", "Needs Work"),
    "topicContinuity": ("Topic Continuity", "Good", "Fragmented"),
    "terminologyConsistency": ("Terminology Consistency", "Consistent", "Inconsistent"),
    "structuralParallelism": ("Structural Parallelism", "Good", "Needs Work"),
}


@dataclass(frozen=True)
class RenderedReport:
    markdown: str
    json: str


def _cell(text: str) -> str:
    return " ".join(text.split()).replace("|", "\\|")


def _quote(text: str) -> list[str]:
    return [f"> {line}" if line.strip() else ">" for line in text.strip().splitlines()]


def _issue_lines(issues: list[Issue]) -> list[str]:
    if not issues:
        return ["**Issues Found**: None", ""]
    lines = ["**Issues Found**:", ""]
    for number, issue in enumerate(issues, start=1):
        lines.append(f"{number}. **{issue.severity.upper()}**: {issue.issue}")
        lines.append(f"   - *Recommendation*: {issue.recommendation or 'N/A'}")
    lines.append("")
    return lines


def _flag_lines(evaluation: Evaluation) -> list[str]:
    lines = ["**Structure Assessment**:"]
    for name, passed in evaluation.flags.by_name().items():
        label, good, bad = FLAG_LABELS[name]
        lines.append(f"- {label}: {'✓ ' + good if passed else '✗ ' + bad}")
    lines.append("")
    return lines


def render_markdown(result: AnalysisResult) -> str:
    lines = ["# Scientific Paper Structure Assessment", "", f"## Paper: {result.title}", ""]

    if result.analysis_error:
        lines += [
            "## Analysis Error",
            "",
            "The analysis could not be completed successfully.",
            f"Error reported: {result.analysis_error}",
            "",
        ]

    lines += ["## Overall Assessment", "", "| Criterion | Score | Assessment | Recommendation |"]
    lines.append("|---|---|---|---|")
    for key, (label, _) in ASSESSMENT_CRITERIA.items():
        criterion = result.document_assessment.get(key)
        if criterion is None:
            lines.append(f"| {label} | N/A | Assessment data missing | |")
            continue
        lines.append(
            f"| {label} | {criterion.score}/10 | {_cell(criterion.assessment)} "
            f"| {_cell(criterion.recommendation)} |"
        )

    stats = result.statistics
    lines += [
        "",
        "## Issue Summary",
        "",
        f"- Critical Issues: {stats.critical}",
        f"- Major Issues: {stats.major}",
        f"- Minor Issues: {stats.minor}",
        "",
        "## Top Recommendations",
        "",
    ]
    if result.overall_recommendations:
        lines += [
            f"{number}. {text}"
            for number, text in enumerate(result.overall_recommendations, start=1)
        ]
    else:
        lines.append("No specific overall recommendations provided.")

    lines += ["", "## Major Issues List", ""]
    if result.major_issues:
        for number, issue in enumerate(result.major_issues, start=1):
            lines += [
                f"### {number}. {issue.issue}",
                f"- **Severity**: {issue.severity}",
                f"- **Location**: {issue.location or 'N/A'}",
                f"- **Recommendation**: {issue.recommendation or 'N/A'}",
                "",
            ]
    else:
        lines += ["No major issues listed.", ""]

    abstract = result.abstract
    lines += ["## Abstract Analysis", ""]
    lines += _quote(abstract.text or "Abstract text not found.") + [""]
    lines += [f"**Summary**: {abstract.summary or 'No summary provided.'}", ""]
    lines += _issue_lines(abstract.issues)

    lines += ["## Section Analysis", ""]
    if not result.sections:
        lines.append("No sections were analyzed.")
    for section in result.sections:
        lines += [f"### {section.name}", ""]
        if not section.paragraphs:
            lines += ["No paragraphs were evaluated in this section.", ""]
        for fallback, paragraph in enumerate(section.paragraphs, start=1):
            lines += [f"#### Paragraph {paragraph.position or fallback}", "", paragraph.text, ""]
            lines += [f"**Summary**: {paragraph.summary or 'No summary provided.'}", ""]
            lines += _flag_lines(paragraph)
            lines += _issue_lines(paragraph.issues)

    return "\n".join(lines).rstrip() + "\n"


def render_json(result: AnalysisResult) -> str:
    return json.dumps(result.to_payload(), indent=2, ensure_ascii=True)


def render(result: AnalysisResult) -> RenderedReport:
    """Pure and deterministic: the same result always renders the same text."""
    return RenderedReport(markdown=render_markdown(result), json=render_json(result))
