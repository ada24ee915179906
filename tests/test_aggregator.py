from papercheck.aggregator import (
    aggregate,
    compute_statistics,
    degraded_result,
    paragraph_location,
    prioritize_issues,
)
from papercheck.models import (
    ASSESSMENT_KEYS,
    AnalysisResult,
    AssessmentOutcome,
    CriterionAssessment,
    DocumentStructure,
    Evaluation,
    EvaluationFlags,
    Issue,
    Section,
    SectionEvaluation,
)

LONG_TEXT = "The quick brown fox jumps over the lazy dog near the river bank."


def _failing(flag_field: str) -> EvaluationFlags:
    return EvaluationFlags.passing().model_copy(update={flag_field: False})


def _fixture():
    abstract = Evaluation(
        text="We study X.",
        flags=_failing("ccc_structure"),
        issues=[Issue(issue="(rule 2A) Abstract lacks context.", severity="minor", rule_tag="rule 2A")],
    )
    sections = [
        SectionEvaluation(
            name="Introduction",
            paragraphs=[
                Evaluation(text="Short one.", flags=EvaluationFlags.passing()),
                Evaluation(
                    text=LONG_TEXT,
                    flags=_failing("sentence_quality"),
                    issues=[
                        Issue(issue="(rule 2B) Long sentence.", severity="critical", rule_tag="rule 2B"),
                        Issue(issue="(rule 2B) Another one.", severity="minor", rule_tag="rule 2B"),
                    ],
                ),
            ],
        )
    ]
    assessment = AssessmentOutcome(
        document_assessment={key: CriterionAssessment(score=6) for key in ASSESSMENT_KEYS},
        major_issues=[Issue(issue="No clear message.", severity="major")],
        overall_recommendations=["State the central finding."],
    )
    structure = DocumentStructure(
        title="My Paper",
        abstract="We study X.",
        sections=(Section(name="Introduction", paragraphs=("Short one.", LONG_TEXT)),),
    )
    return structure, abstract, sections, assessment


def test_statistics_count_every_issue_once() -> None:
    _, abstract, sections, assessment = _fixture()
    stats = compute_statistics(abstract, sections, assessment.major_issues)
    assert (stats.critical, stats.major, stats.minor) == (1, 1, 2)


def test_paragraph_location_quotes_first_thirty_chars() -> None:
    assert paragraph_location("Introduction", 2, LONG_TEXT) == (
        'Introduction: paragraph 2 (starts: "The quick brown fox jumps over…")'
    )


def test_prioritized_issues_are_grouped_then_sorted_by_severity() -> None:
    _, abstract, sections, assessment = _fixture()
    ordered = prioritize_issues(abstract, sections, assessment.major_issues)
    assert [issue.severity for issue in ordered] == ["critical", "major", "minor", "minor"]
    assert ordered[0].location.startswith("Introduction: paragraph 2")
    assert ordered[1].issue == "No clear message."
    # Equal severities keep their group order: abstract before paragraphs.
    assert ordered[2].location == "Abstract"
    assert ordered[3].issue == "(rule 2B) Another one."


def test_aggregate_builds_complete_result_and_recomputes_statistics() -> None:
    structure, abstract, sections, assessment = _fixture()
    result = aggregate(structure, abstract, sections, assessment)
    assert result.title == "My Paper"
    assert result.statistics.model_dump() == {"critical": 1, "major": 1, "minor": 2}
    assert result.major_issues[0].location == "Document"
    assert len(result.prioritized_issues) == 4
    assert result.analysis_error is None
    assert set(result.document_assessment) == set(ASSESSMENT_KEYS)


def test_aggregate_without_assessment_fills_typed_defaults() -> None:
    structure, abstract, sections, _ = _fixture()
    result = aggregate(structure, abstract, sections, None, "Document-level assessment could not be completed.")
    assert result.document_assessment == {}
    assert result.major_issues == []
    assert result.overall_recommendations == []
    assert result.analysis_error
    assert result.statistics.critical == 1


def test_degraded_result_is_fully_typed() -> None:
    result = degraded_result("Analysis timed out after 180 seconds.", title="")
    payload = result.to_payload()
    assert payload["title"] == "Untitled Document"
    assert payload["analysisError"] == "Analysis timed out after 180 seconds."
    assert payload["abstract"]["issues"] == []
    assert payload["statistics"] == {"critical": 0, "major": 0, "minor": 0}
    assert payload["sections"] == []
    assert payload["documentAssessment"] == {}
    assert payload["prioritizedIssues"] == []


def test_payload_uses_camel_case_and_omits_missing_error() -> None:
    structure, abstract, sections, assessment = _fixture()
    payload = aggregate(structure, abstract, sections, assessment).to_payload()
    assert "analysisError" not in payload
    assert "overallRecommendations" in payload
    assert payload["abstract"]["flags"]["cccStructure"] is False
    assert payload["abstract"]["issues"][0]["ruleTag"] == "rule 2A"


def test_issue_location_keeps_paragraph_position_after_a_gap() -> None:
    sections = [
        SectionEvaluation(
            name="Methods",
            paragraphs=[
                Evaluation(text="First.", flags=EvaluationFlags.passing(), position=1),
                Evaluation(
                    text="Third paragraph text.",
                    flags=_failing("topic_continuity"),
                    issues=[Issue(issue="(rule 4B) Topic drifts.", severity="major", rule_tag="rule 4B")],
                    position=3,
                ),
            ],
        )
    ]
    ordered = prioritize_issues(Evaluation(), sections, [])
    assert ordered[0].location == 'Methods: paragraph 3 (starts: "Third paragraph text.…")'


def test_default_abstract_passes_every_flag() -> None:
    result = AnalysisResult(title="T")
    assert result.abstract.flags.failed() == []
    assert result.abstract.issues == []
