import json

from papercheck.models import PARAGRAPH_FLAGS
from papercheck.rules import ASSESSMENT_CRITERIA, RuleCatalog, get_rule_catalog


def test_default_catalog_covers_every_paragraph_flag() -> None:
    catalog = RuleCatalog.load()
    assert {rule.id for rule in catalog.paragraph.rules} == set(PARAGRAPH_FLAGS)
    assert catalog.paragraph.scope == "paragraph"
    assert catalog.document.scope == "document"
    assert all(rule.checkpoints for rule in catalog.paragraph.rules)


def test_every_assessment_criterion_cites_a_document_rule() -> None:
    catalog = get_rule_catalog()
    for _, numbers in ASSESSMENT_CRITERIA.values():
        for number in numbers:
            assert catalog.document.by_number(number) is not None, number


def test_flag_for_resolves_names_tags_and_numbers() -> None:
    catalog = get_rule_catalog()
    assert catalog.flag_for("cccStructure") == "cccStructure"
    assert catalog.flag_for("CCCSTRUCTURE") == "cccStructure"
    assert catalog.flag_for("rule 2A") == "cccStructure"
    assert catalog.flag_for("Rule  2b") == "sentenceQuality"
    assert catalog.flag_for("3a") == "terminologyConsistency"
    assert catalog.flag_for("rule 99") is None
    assert catalog.flag_for(None) is None


def test_rule_for_flag_and_title_lookup() -> None:
    catalog = get_rule_catalog()
    rule = catalog.rule_for_flag("cccStructure")
    assert rule is not None
    assert rule.tag == "rule 2A"
    assert catalog.title_for("5") == "Write a complete abstract"
    assert catalog.title_for("42") is None


def test_prompt_block_lists_rules_and_checkpoints() -> None:
    block = get_rule_catalog().paragraph.prompt_block()
    assert "### Paragraph Rule 2A (cccStructure): Context-Content-Conclusion structure" in block
    assert "- The first sentence provides context or introduces the paragraph topic." in block


def test_load_missing_catalog_raises(tmp_path) -> None:
    try:
        RuleCatalog.load(tmp_path)
        raise AssertionError("Expected FileNotFoundError for a missing catalog.")
    except FileNotFoundError as exc:
        assert "paragraph-rules.json" in str(exc)


def test_load_empty_catalog_raises(tmp_path) -> None:
    for name, scope in (("paragraph-rules.json", "paragraph"), ("document-rules.json", "document")):
        (tmp_path / name).write_text(
            json.dumps({"version": "1", "scope": scope, "rules": []}), encoding="utf-8"
        )
    try:
        RuleCatalog.load(tmp_path)
        raise AssertionError("Expected ValueError for an empty catalog.")
    except ValueError as exc:
        assert "contains no rules" in str(exc)


def test_load_accepts_plain_string_checkpoints(tmp_path) -> None:
    rule = {
        "id": "cccStructure",
        "originalRuleNumber": "2A",
        "title": "CCC",
        "fullText": "Context, content, conclusion.",
        "checkpoints": ["Opens with context."],
    }
    for name, scope in (("paragraph-rules.json", "paragraph"), ("document-rules.json", "document")):
        (tmp_path / name).write_text(
            json.dumps({"version": "2", "scope": scope, "rules": [rule]}), encoding="utf-8"
        )
    catalog = RuleCatalog.load(tmp_path)
    assert catalog.paragraph.version == "2"
    assert catalog.paragraph.rules[0].checkpoints == ("Opens with context.",)
