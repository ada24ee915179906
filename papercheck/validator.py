"""Completeness checks, the bounded retry controller and the flag/issue repair step."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import TypeVar

from papercheck.models import (
    ASSESSMENT_KEYS,
    AnalysisResult,
    DocumentStructure,
    EvaluationFlags,
    Issue,
)
from papercheck.rules import RuleCatalog

log = logging.getLogger(__name__)

T = TypeVar("T")


def missing_assessment_keys(assessment: Mapping[str, object]) -> list[str]:
    return [key for key in ASSESSMENT_KEYS if key not in assessment]


def completeness_problems(
    result: AnalysisResult,
    structure: DocumentStructure,
    min_paragraphs: int | None = None,
) -> list[str]:
    """Lists every reason the result is incomplete; empty means complete."""
    if min_paragraphs is None:
        from papercheck.config import MIN_EVALUATED_PARAGRAPHS

        min_paragraphs = MIN_EVALUATED_PARAGRAPHS

    problems: list[str] = []
    if not result.sections:
        problems.append("no sections were evaluated")
    empty = [section.name for section in result.sections if not section.paragraphs]
    if empty:
        problems.append(f"sections without evaluated paragraphs: {', '.join(empty)}")

    evaluated = sum(len(section.paragraphs) for section in result.sections)
    floor = min(min_paragraphs, structure.paragraph_count)
    if evaluated < floor:
        problems.append(f"only {evaluated} of at least {floor} paragraphs were evaluated")

    missing = missing_assessment_keys(result.document_assessment)
    if missing:
        problems.append(f"document assessment is missing: {', '.join(missing)}")
    return problems


def validate(
    result: AnalysisResult,
    structure: DocumentStructure,
    min_paragraphs: int | None = None,
) -> bool:
    return not completeness_problems(result, structure, min_paragraphs)


async def with_retry(
    produce: Callable[[T | None], Awaitable[T]],
    validate: Callable[[T], bool],
    max_attempts: int = 2,
    usable: Callable[[T], bool] | None = None,
) -> T:
    """
    Calls produce(None), then produce(previous) while the reply is invalid.

    At most max_attempts calls are made. The first valid reply wins; otherwise
    the original reply is returned, unless it carried nothing usable and a later
    reply did. produce is expected to convert oracle failures into a reply.
    """
    attempts = max(1, max_attempts)
    first = await produce(None)
    if validate(first):
        return first

    best = first
    previous = first
    for attempt in range(2, attempts + 1):
        log.info("Oracle reply incomplete; retrying (attempt %d/%d)", attempt, attempts)
        reply = await produce(previous)
        if validate(reply):
            return reply
        if usable is not None and not usable(best) and usable(reply):
            best = reply
        previous = reply

    log.warning("Oracle reply still incomplete after %d attempts; keeping best reply.", attempts)
    return best


def _synthesized_issue(flag: str, catalog: RuleCatalog) -> Issue:
    rule = catalog.rule_for_flag(flag)
    if rule is None:
        return Issue(
            issue=f"Paragraph does not satisfy the {flag} check.",
            severity="minor",
            recommendation=f"Revise the paragraph to satisfy the {flag} check.",
        )
    checkpoint = rule.checkpoints[0] if rule.checkpoints else rule.full_text
    return Issue(
        issue=f"({rule.tag}) {rule.title}: not satisfied. {checkpoint}",
        severity="minor",
        recommendation=f"({rule.tag}) Revise the paragraph so that: {checkpoint}",
        rule_tag=rule.tag,
    )


def enforce_flag_invariant(
    flags: EvaluationFlags,
    issues: list[Issue],
    catalog: RuleCatalog,
) -> tuple[EvaluationFlags, list[Issue]]:
    """
    Repairs an evaluation so that flags and issues agree.

    An issue tagged with a flag's rule turns that flag false. When every flag
    still passes, the remaining (untagged) issues are dropped. Each false flag
    without a tagged issue gets a synthesized minor issue.
    """
    values = flags.by_name()
    tagged: set[str] = set()
    for issue in issues:
        flag = catalog.flag_for(issue.rule_tag)
        if flag is not None and flag in values:
            values[flag] = False
            tagged.add(flag)

    if all(values.values()):
        if issues:
            log.debug("Dropping %d untagged issues on a passing evaluation", len(issues))
        return EvaluationFlags.model_validate(values), []

    repaired = list(issues)
    for flag, passed in values.items():
        if not passed and flag not in tagged:
            repaired.append(_synthesized_issue(flag, catalog))
    return EvaluationFlags.model_validate(values), repaired
