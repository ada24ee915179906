"""Rule catalog: the paragraph-level and document-level writing rules."""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path

from pydantic import ValidationError

from papercheck.models import CamelModel, Rule

log = logging.getLogger(__name__)

PARAGRAPH_RULES_FILE = "paragraph-rules.json"
DOCUMENT_RULES_FILE = "document-rules.json"

# criterion key -> (display label, document rule numbers it is judged against)
ASSESSMENT_CRITERIA: dict[str, tuple[str, tuple[str, ...]]] = {
    "titleQuality": ("Title Quality", ("1",)),
    "abstractCompleteness": ("Abstract Completeness", ("5",)),
    "introductionStructure": ("Introduction Structure", ("6",)),
    "resultsOrganization": ("Results Organization", ("7A",)),
    "discussionQuality": ("Discussion Quality", ("8A", "8B", "8C")),
    "messageFocus": ("Message Focus", ("1",)),
    "topicOrganization": ("Topic Organization", ("4A",)),
}


class RuleSet(CamelModel):
    scope: str
    version: str = "0"
    rules: tuple[Rule, ...] = ()

    def by_number(self, rule_number: str) -> Rule | None:
        wanted = rule_number.strip().upper()
        for rule in self.rules:
            if rule.original_rule_number.upper() == wanted:
                return rule
        return None

    def prompt_block(self) -> str:
        label = self.scope.capitalize()
        blocks: list[str] = []
        for rule in self.rules:
            checkpoints = "\n".join(f"- {cp}" for cp in rule.checkpoints)
            blocks.append(
                f"### {label} Rule {rule.original_rule_number} ({rule.id}): {rule.title}\n"
                f"{rule.full_text}\n"
                f"Checkpoints:\n{checkpoints}"
            )
        return "\n\n".join(blocks)


def _load_rule_set(path: Path, scope: str) -> RuleSet:
    if not path.is_file():
        raise FileNotFoundError(f"Rule catalog not found: {path}")
    raw = json.loads(path.read_text(encoding="utf-8"))
    rules = []
    for entry in raw.get("rules", []):
        checkpoints = [
            cp["description"] if isinstance(cp, dict) else str(cp)
            for cp in entry.get("checkpoints", [])
        ]
        rules.append({**entry, "checkpoints": checkpoints})
    try:
        rule_set = RuleSet(
            scope=raw.get("scope", scope),
            version=str(raw.get("version", "0")),
            rules=rules,
        )
    except ValidationError as exc:
        raise ValueError(f"Invalid rule catalog {path.name}: {exc}") from exc
    if not rule_set.rules:
        raise ValueError(f"Rule catalog {path.name} contains no rules.")
    return rule_set


class RuleCatalog:
    """Process-wide, read-only pair of rule sets."""

    def __init__(self, paragraph: RuleSet, document: RuleSet) -> None:
        self.paragraph = paragraph
        self.document = document
        self._by_flag = {rule.id: rule for rule in paragraph.rules}
        self._flag_by_tag = {rule.tag.lower(): rule.id for rule in paragraph.rules}

    @classmethod
    def load(cls, rules_dir: Path | str | None = None) -> RuleCatalog:
        from papercheck.config import RULES_DIR

        base = Path(rules_dir) if rules_dir is not None else RULES_DIR
        paragraph = _load_rule_set(base / PARAGRAPH_RULES_FILE, "paragraph")
        document = _load_rule_set(base / DOCUMENT_RULES_FILE, "document")
        log.info(
            "Loaded rule catalog from %s: %d paragraph rules (v%s), %d document rules (v%s)",
            base,
            len(paragraph.rules),
            paragraph.version,
            len(document.rules),
            document.version,
        )
        return cls(paragraph=paragraph, document=document)

    def rule_for_flag(self, flag: str) -> Rule | None:
        return self._by_flag.get(flag)

    def flag_for(self, reference: str | None) -> str | None:
        """Resolves a flag name, rule tag, or bare rule number to a flag name."""
        if not reference:
            return None
        ref = reference.strip()
        if ref in self._by_flag:
            return ref
        lowered = ref.lower()
        for flag in self._by_flag:
            if flag.lower() == lowered:
                return flag
        if not lowered.startswith("rule"):
            lowered = f"rule {lowered}"
        return self._flag_by_tag.get(" ".join(lowered.split()))

    def title_for(self, rule_number: str) -> str | None:
        for rule_set in (self.paragraph, self.document):
            rule = rule_set.by_number(rule_number)
            if rule is not None:
                return rule.title
        return None


@lru_cache(maxsize=1)
def get_rule_catalog() -> RuleCatalog:
    return RuleCatalog.load()
