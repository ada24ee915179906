"""Rule evaluation: one generic oracle-backed evaluator, instantiated per rule scope."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from papercheck.json_parser import parse_json_response
from papercheck.llm_client import LLMClient, LLMServiceError, OracleAuthError
from papercheck.models import (
    ASSESSMENT_KEYS,
    PARAGRAPH_FLAGS,
    AssessmentOutcome,
    CriterionAssessment,
    DocumentStructure,
    Evaluation,
    EvaluationFlags,
    Issue,
    Rule,
    SectionEvaluation,
    Severity,
)
from papercheck.prompts import (
    SYSTEM_PROMPT,
    build_document_prompt,
    build_paragraph_prompt,
    build_retry_prompt,
    render_units,
)
from papercheck.rules import ASSESSMENT_CRITERIA, RuleCatalog, RuleSet
from papercheck.validator import enforce_flag_invariant, missing_assessment_keys, with_retry

log = logging.getLogger(__name__)

RequestT = TypeVar("RequestT")
ValueT = TypeVar("ValueT")

ABSTRACT_INDEX = 0

# Older reply shapes name some criteria differently.
_ASSESSMENT_ALIASES = {
    "introductionEffectiveness": "introductionStructure",
    "singleMessageFocus": "messageFocus",
    "titleEffectiveness": "titleQuality",
    "abstractQuality": "abstractCompleteness",
    "resultsPresentation": "resultsOrganization",
    "discussionEffectiveness": "discussionQuality",
    "topicFlow": "topicOrganization",
}

_SEVERITY_ALIASES: dict[str, Severity] = {
    "critical": "critical",
    "severe": "critical",
    "blocker": "critical",
    "major": "major",
    "high": "major",
    "important": "major",
    "minor": "minor",
    "moderate": "minor",
    "medium": "minor",
    "low": "minor",
}


@dataclass(frozen=True)
class Unit:
    index: int
    text: str
    label: str


@dataclass(frozen=True)
class DocumentRequest:
    title: str
    abstract: str
    digest: str
    sections: tuple[tuple[str, int], ...] = ()


@dataclass
class OracleReply(Generic[ValueT]):
    raw: str
    value: ValueT | None
    problems: list[str] = field(default_factory=list)
    fatal: bool = False

    @property
    def complete(self) -> bool:
        return self.value is not None and not self.problems

    @property
    def usable(self) -> bool:
        return self.value is not None


@dataclass
class EvaluationOutcome:
    abstract: Evaluation
    sections: list[SectionEvaluation]
    assessment: AssessmentOutcome | None
    problems: list[str] = field(default_factory=list)


def normalize_severity(value: Any) -> Severity:
    return _SEVERITY_ALIASES.get(str(value or "").strip().lower(), "minor")


def clamp_score(value: Any) -> int | None:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return min(10, max(1, score))


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "pass", "passed"}
    return False


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _norm(text: Any) -> str:
    return " ".join(str(text or "").split()).lower()


class RuleEvaluator(Generic[RequestT, ValueT]):
    """Prompt builder, decoder and retry loop around one rule set."""

    def __init__(
        self,
        rule_set: RuleSet,
        catalog: RuleCatalog,
        llm: LLMClient,
        max_attempts: int | None = None,
    ) -> None:
        if max_attempts is None:
            from papercheck.config import RETRY_MAX_ATTEMPTS

            max_attempts = RETRY_MAX_ATTEMPTS
        self.rule_set = rule_set
        self.catalog = catalog
        self.llm = llm
        self.max_attempts = max_attempts

    def build_prompt(self, request: RequestT) -> str:
        raise NotImplementedError

    def decode(self, request: RequestT, payload: dict[str, Any]) -> tuple[ValueT, list[str]]:
        """Returns the typed value and a list of missing items."""
        raise NotImplementedError

    def structural_hint(self, request: RequestT) -> str:
        return ""

    async def _ask(
        self,
        request: RequestT,
        previous: OracleReply[ValueT] | None,
    ) -> OracleReply[ValueT]:
        prompt = self.build_prompt(request)
        if previous is not None:
            prompt = build_retry_prompt(
                prompt, previous.raw, previous.problems, self.structural_hint(request)
            )
        try:
            raw = await self.llm.complete(prompt, system=SYSTEM_PROMPT)
        except OracleAuthError as exc:
            log.warning("%s: oracle rejected credentials: %s", self.__class__.__name__, exc)
            return OracleReply(raw="", value=None, problems=[f"oracle call failed: {exc}"], fatal=True)
        except LLMServiceError as exc:
            log.warning("%s: oracle call failed: %s", self.__class__.__name__, exc)
            return OracleReply(raw="", value=None, problems=[f"oracle call failed: {exc}"])

        try:
            value, problems = self.decode(request, parse_json_response(raw))
        except ValueError as exc:
            log.warning("%s: reply could not be decoded: %s", self.__class__.__name__, exc)
            return OracleReply(raw=raw, value=None, problems=[f"reply could not be decoded: {exc}"])
        return OracleReply(raw=raw, value=value, problems=problems)

    async def run(self, request: RequestT) -> OracleReply[ValueT]:
        return await with_retry(
            lambda previous: self._ask(request, previous),
            lambda reply: reply.complete or reply.fatal,
            max_attempts=self.max_attempts,
            usable=lambda reply: reply.usable,
        )

    def resolve_rule(self, reference: str) -> Rule | None:
        """Maps a flag name, rule tag or bare rule number to a paragraph rule."""
        flag = self.catalog.flag_for(reference)
        return self.catalog.rule_for_flag(flag) if flag else None

    def decode_issue(self, item: Any, default_location: str | None = None) -> Issue | None:
        if not isinstance(item, dict):
            return None
        text = str(item.get("issue") or item.get("description") or "").strip()
        if not text:
            return None
        recommendation = str(item.get("recommendation") or item.get("suggestion") or "").strip()

        reference = item.get("rule") or item.get("ruleTag") or item.get("criterion")
        rule = self.resolve_rule(str(reference)) if reference else None
        tag = rule.tag if rule is not None else None
        if tag:
            prefix = f"({tag})"
            if not text.lower().startswith(prefix.lower()):
                text = f"{prefix} {text}"
            if recommendation and not recommendation.lower().startswith(prefix.lower()):
                recommendation = f"{prefix} {recommendation}"

        location = str(item.get("location") or "").strip() or default_location
        return Issue(
            issue=text,
            severity=normalize_severity(item.get("severity")),
            recommendation=recommendation,
            location=location,
            rule_tag=tag,
        )


class ParagraphEvaluator(RuleEvaluator[list[Unit], dict[int, Evaluation]]):
    """Evaluates a batch of text units against the paragraph rules."""

    def build_prompt(self, request: list[Unit]) -> str:
        return build_paragraph_prompt(
            render_units(request), self.rule_set.prompt_block(), len(request)
        )

    def structural_hint(self, request: list[Unit]) -> str:
        lines = [f"Return exactly {len(request)} entries in \"paragraphs\":"]
        lines.extend(f"- index {unit.index}: {unit.label}" for unit in request)
        return "\n".join(lines)

    def _evaluation(self, unit: Unit, entry: dict[str, Any]) -> Evaluation:
        raw_flags = entry.get("evaluations") or entry.get("flags") or {}
        if not isinstance(raw_flags, dict):
            raw_flags = {}
        flags = EvaluationFlags.model_validate(
            {name: _as_bool(raw_flags.get(name)) for name in PARAGRAPH_FLAGS}
        )
        issues = [
            issue
            for issue in (self.decode_issue(item) for item in entry.get("issues") or [])
            if issue is not None
        ]
        flags, issues = enforce_flag_invariant(flags, issues, self.catalog)
        return Evaluation(
            text=unit.text,
            summary=str(entry.get("summary") or "").strip(),
            flags=flags,
            issues=issues,
        )

    def decode(
        self, request: list[Unit], payload: dict[str, Any]
    ) -> tuple[dict[int, Evaluation], list[str]]:
        entries = payload.get("paragraphs")
        if entries is None:
            entries = payload.get("units") or payload.get("results")
        if not isinstance(entries, list):
            raise ValueError("reply has no \"paragraphs\" list")
        entries = [entry for entry in entries if isinstance(entry, dict)]

        by_index = {unit.index: unit for unit in request}
        by_text = {_norm(unit.text): unit.index for unit in request}
        matched: dict[int, Evaluation] = {}
        unplaced: list[int] = []

        for position, entry in enumerate(entries):
            index = _as_int(entry.get("index"))
            if index in by_index and index not in matched:
                matched[index] = self._evaluation(by_index[index], entry)
                continue
            index = by_text.get(_norm(entry.get("text")))
            if index is not None and index not in matched:
                matched[index] = self._evaluation(by_index[index], entry)
                continue
            unplaced.append(position)

        if unplaced and len(entries) == len(request):
            for position in unplaced:
                unit = request[position]
                if unit.index not in matched:
                    matched[unit.index] = self._evaluation(unit, entries[position])

        problems = [
            f"unit {unit.index} ({unit.label})" for unit in request if unit.index not in matched
        ]
        return matched, problems


class DocumentEvaluator(RuleEvaluator[DocumentRequest, AssessmentOutcome]):
    """Scores the document-level criteria from a digest of the paper."""

    def build_prompt(self, request: DocumentRequest) -> str:
        criteria = []
        for key, (label, numbers) in ASSESSMENT_CRITERIA.items():
            titles = "; ".join(
                f"rule {number} ({self.catalog.title_for(number) or 'untitled'})" for number in numbers
            )
            criteria.append(f"- {key} ({label}): judged against {titles}")
        return build_document_prompt(
            title=request.title,
            abstract=request.abstract,
            digest=request.digest,
            rules_block=self.rule_set.prompt_block(),
            criteria_block="\n".join(criteria),
        )

    def resolve_rule(self, reference: str) -> Rule | None:
        # Document issues cite document rules by number, id or criterion key;
        # paragraph rules are a fallback.
        number = " ".join(reference.split())
        if number in ASSESSMENT_CRITERIA:
            number = ASSESSMENT_CRITERIA[number][1][0]
        if number.lower().startswith("rule "):
            number = number[len("rule ") :]
        rule = self.rule_set.by_number(number)
        if rule is None:
            rule = next((r for r in self.rule_set.rules if r.id.lower() == number.lower()), None)
        return rule if rule is not None else super().resolve_rule(reference)

    def structural_hint(self, request: DocumentRequest) -> str:
        lines = [f"\"documentAssessment\" must contain all of: {', '.join(ASSESSMENT_KEYS)}."]
        if request.sections:
            lines.append("The paper has these sections:")
            lines.extend(f"- {name} ({count} paragraphs)" for name, count in request.sections)
        return "\n".join(lines)

    def decode(
        self, request: DocumentRequest, payload: dict[str, Any]
    ) -> tuple[AssessmentOutcome, list[str]]:
        raw_assessment = payload.get("documentAssessment") or payload.get("document_assessment")
        if raw_assessment is None:
            raw_assessment = {}
        if not isinstance(raw_assessment, dict):
            raise ValueError("\"documentAssessment\" is not an object")

        assessment: dict[str, CriterionAssessment] = {}
        for key, value in raw_assessment.items():
            canonical = _ASSESSMENT_ALIASES.get(key, key)
            if canonical not in ASSESSMENT_KEYS or canonical in assessment:
                continue
            criterion = _criterion(value)
            if criterion is not None:
                assessment[canonical] = criterion

        raw_issues = payload.get("majorIssues")
        if raw_issues is None:
            raw_issues = raw_assessment.get("majorIssues") or []
        major_issues = [
            issue
            for issue in (self.decode_issue(item, "Document") for item in raw_issues or [])
            if issue is not None
        ]

        raw_recommendations = payload.get("overallRecommendations")
        if raw_recommendations is None:
            raw_recommendations = raw_assessment.get("overallRecommendations") or []
        recommendations = [
            text for text in (_recommendation_text(item) for item in raw_recommendations) if text
        ]

        outcome = AssessmentOutcome(
            document_assessment=assessment,
            major_issues=major_issues,
            overall_recommendations=recommendations,
        )
        problems = [f"documentAssessment.{key}" for key in missing_assessment_keys(assessment)]
        return outcome, problems


def _criterion(value: Any) -> CriterionAssessment | None:
    if not isinstance(value, dict):
        score = clamp_score(value)
        return CriterionAssessment(score=score) if score is not None else None
    score = clamp_score(value.get("score"))
    if score is None:
        return None
    return CriterionAssessment(
        score=score,
        assessment=str(value.get("assessment") or "").strip(),
        recommendation=str(value.get("recommendation") or "").strip(),
    )


def _recommendation_text(item: Any) -> str:
    if isinstance(item, dict):
        item = item.get("recommendation") or item.get("text") or ""
    return str(item or "").strip()


def build_units(structure: DocumentStructure) -> tuple[Unit | None, list[list[Unit]]]:
    """Abstract unit (index 0) plus per-section paragraph units numbered from 1."""
    abstract = structure.abstract.strip()
    abstract_unit = Unit(ABSTRACT_INDEX, abstract, "the abstract") if abstract else None
    per_section: list[list[Unit]] = []
    index = ABSTRACT_INDEX
    for section in structure.sections:
        units = []
        for number, paragraph in enumerate(section.paragraphs, start=1):
            index += 1
            units.append(Unit(index, paragraph, f"paragraph {number} of section \"{section.name}\""))
        per_section.append(units)
    return abstract_unit, per_section


def batch_units(units: list[Unit], batch_size: int, max_chars: int) -> list[list[Unit]]:
    batches: list[list[Unit]] = []
    current: list[Unit] = []
    size = 0
    for unit in units:
        if current and (len(current) >= batch_size or size + len(unit.text) > max_chars):
            batches.append(current)
            current, size = [], 0
        current.append(unit)
        size += len(unit.text)
    if current:
        batches.append(current)
    return batches


def build_digest(
    structure: DocumentStructure,
    sections: list[SectionEvaluation],
    max_chars: int | None = None,
) -> str:
    """Per-section summary lines for the document prompt, bounded in size."""
    if max_chars is None:
        from papercheck.config import DIGEST_MAX_CHARS

        max_chars = DIGEST_MAX_CHARS

    headers = []
    for section in structure.sections:
        count = len(section.paragraphs)
        noun = "paragraph" if count == 1 else "paragraphs"
        headers.append(f"SECTION: {section.name} ({count} {noun})")
    budget = max_chars - sum(len(header) + 1 for header in headers)

    lines: list[str] = []
    for position, header in enumerate(headers):
        lines.append(header)
        evaluation = sections[position] if position < len(sections) else None
        paragraphs = evaluation.paragraphs if evaluation is not None else []
        omitted = 0
        for fallback, paragraph in enumerate(paragraphs, start=1):
            summary = paragraph.summary or " ".join(paragraph.text.split())[:200]
            failed = paragraph.flags.failed()
            line = f"- P{paragraph.position or fallback}: {summary}"
            if failed:
                line += f" [failed: {', '.join(failed)}]"
            if len(line) + 1 > budget:
                omitted += 1
                continue
            budget -= len(line) + 1
            lines.append(line)
        if omitted:
            lines.append(f"- ({omitted} more paragraphs omitted)")
    return "\n".join(lines)


async def evaluate(
    structure: DocumentStructure,
    catalog: RuleCatalog,
    llm: LLMClient,
    *,
    batch_size: int | None = None,
    batch_max_chars: int | None = None,
    concurrency: int | None = None,
    max_attempts: int | None = None,
) -> EvaluationOutcome:
    """
    Evaluates every paragraph (abstract included) and the whole document.

    Paragraph batches run concurrently under a semaphore; the document
    assessment runs afterwards on a digest of the paragraph results. Units the
    oracle never returned are left out and reported in ``problems``.
    """
    from papercheck.config import BATCH_MAX_CHARS, EVAL_CONCURRENCY, PARAGRAPH_BATCH_SIZE

    batch_size = max(1, batch_size or PARAGRAPH_BATCH_SIZE)
    batch_max_chars = batch_max_chars or BATCH_MAX_CHARS
    concurrency = max(1, concurrency or EVAL_CONCURRENCY)

    paragraph_evaluator = ParagraphEvaluator(catalog.paragraph, catalog, llm, max_attempts)
    document_evaluator = DocumentEvaluator(catalog.document, catalog, llm, max_attempts)

    abstract_unit, per_section = build_units(structure)
    all_units = ([abstract_unit] if abstract_unit else []) + [
        unit for units in per_section for unit in units
    ]
    batches = batch_units(all_units, batch_size, batch_max_chars)
    log.debug("Evaluating %d units in %d batches", len(all_units), len(batches))

    semaphore = asyncio.Semaphore(concurrency)

    async def run_batch(batch: list[Unit]) -> OracleReply[dict[int, Evaluation]]:
        async with semaphore:
            return await paragraph_evaluator.run(batch)

    replies = await asyncio.gather(*(run_batch(batch) for batch in batches))

    evaluations: dict[int, Evaluation] = {}
    problems: list[str] = []
    for reply in replies:
        if reply.value:
            evaluations.update(reply.value)
        problems.extend(reply.problems)

    if abstract_unit is None:
        abstract = Evaluation(flags=EvaluationFlags.passing())
    elif ABSTRACT_INDEX in evaluations:
        abstract = evaluations[ABSTRACT_INDEX]
    else:
        log.warning("Abstract evaluation missing after retry; reporting it as not evaluated.")
        abstract = Evaluation(
            text=abstract_unit.text,
            summary="Not evaluated: no evaluation was returned for the abstract.",
            flags=EvaluationFlags.passing(),
        )

    sections: list[SectionEvaluation] = []
    for section, units in zip(structure.sections, per_section):
        kept = [
            evaluations[unit.index].model_copy(update={"position": number})
            for number, unit in enumerate(units, start=1)
            if unit.index in evaluations
        ]
        if len(kept) < len(units):
            log.warning(
                "Section %r: %d of %d paragraphs were not evaluated",
                section.name,
                len(units) - len(kept),
                len(units),
            )
        sections.append(SectionEvaluation(name=section.name, paragraphs=kept))

    request = DocumentRequest(
        title=structure.title,
        abstract=structure.abstract,
        digest=build_digest(structure, sections),
        sections=tuple((section.name, len(section.paragraphs)) for section in structure.sections),
    )
    document_reply = await document_evaluator.run(request)
    problems.extend(document_reply.problems)

    return EvaluationOutcome(
        abstract=abstract,
        sections=sections,
        assessment=document_reply.value,
        problems=problems,
    )
