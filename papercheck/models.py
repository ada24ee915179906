"""Shared data models for manuscript structure analysis."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Severity = Literal["critical", "major", "minor"]

SEVERITY_RANK: dict[str, int] = {"critical": 0, "major": 1, "minor": 2}

# Flag names in the order they are rendered.
PARAGRAPH_FLAGS: tuple[str, ...] = (
    "cccStructure",
    "sentenceQuality",
    "topicContinuity",
    "terminologyConsistency",
    "structuralParallelism",
)

ASSESSMENT_KEYS: tuple[str, ...] = (
    "titleQuality",
    "abstractCompleteness",
    "introductionStructure",
    "resultsOrganization",
    "discussionQuality",
    "messageFocus",
    "topicOrganization",
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Rule(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    original_rule_number: str
    title: str
    full_text: str
    checkpoints: tuple[str, ...] = ()

    @property
    def tag(self) -> str:
        return f"rule {self.original_rule_number}"


class Section(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    paragraphs: tuple[str, ...] = ()


class DocumentStructure(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    title: str
    abstract: str = ""
    sections: tuple[Section, ...] = ()

    @property
    def paragraph_count(self) -> int:
        return sum(len(section.paragraphs) for section in self.sections)


class Issue(CamelModel):
    issue: str
    severity: Severity
    recommendation: str = ""
    location: str | None = None
    rule_tag: str | None = None


class EvaluationFlags(CamelModel):
    ccc_structure: bool = False
    sentence_quality: bool = False
    topic_continuity: bool = False
    terminology_consistency: bool = False
    structural_parallelism: bool = False

    def by_name(self) -> dict[str, bool]:
        return self.model_dump(by_alias=True)

    def failed(self) -> list[str]:
        return [name for name, value in self.by_name().items() if not value]

    @classmethod
    def passing(cls) -> EvaluationFlags:
        return cls.model_validate({name: True for name in PARAGRAPH_FLAGS})


class Evaluation(CamelModel):
    text: str = ""
    summary: str = ""
    flags: EvaluationFlags = Field(default_factory=EvaluationFlags)
    issues: list[Issue] = Field(default_factory=list)
    # 1-based place in the section; None for the abstract.
    position: int | None = None


class CriterionAssessment(CamelModel):
    score: int = Field(..., ge=1, le=10)
    assessment: str = ""
    recommendation: str = ""


class Statistics(CamelModel):
    critical: int = 0
    major: int = 0
    minor: int = 0


class SectionEvaluation(CamelModel):
    name: str
    paragraphs: list[Evaluation] = Field(default_factory=list)


class AssessmentOutcome(CamelModel):
    """Document-level oracle output before aggregation."""

    document_assessment: dict[str, CriterionAssessment] = Field(default_factory=dict)
    major_issues: list[Issue] = Field(default_factory=list)
    overall_recommendations: list[str] = Field(default_factory=list)


class AnalysisResult(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    title: str
    abstract: Evaluation = Field(
        default_factory=lambda: Evaluation(flags=EvaluationFlags.passing())
    )
    document_assessment: dict[str, CriterionAssessment] = Field(default_factory=dict)
    major_issues: list[Issue] = Field(default_factory=list)
    overall_recommendations: list[str] = Field(default_factory=list)
    statistics: Statistics = Field(default_factory=Statistics)
    sections: list[SectionEvaluation] = Field(default_factory=list)
    prioritized_issues: list[Issue] = Field(default_factory=list)
    analysis_error: str | None = None

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
