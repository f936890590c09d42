"""Running a rule set against container artifacts and summarising violations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from whalewatch.config import get_config
from whalewatch.rules import ALLOWED_TARGETS, RuleError, RuleSet

logger = logging.getLogger(__name__)

_FIXED_HEADING = "## ✅ Automatically Fixed Issues\n\n"
_DETECTED_HEADING = "## ❌ Detected but Not Automatically Fixable\n\n"


@dataclass
class Violation:
    rule_id: str
    description: str = ""
    fix: str = ""
    auto_fixed: bool = False

    def to_markdown(self) -> str:
        return f"`{self.rule_id}` - {self.description}"


@dataclass
class Violations:
    checked_count: int = 0
    violation_count: int = 0
    fixable_count: int = 0
    violations: list[Violation] = field(default_factory=list)

    def build_description_markdown(self) -> str:
        """Markdown listing fixed and unfixed violations under separate headings."""
        fixed = [v.to_markdown() for v in self.violations if v.auto_fixed]
        detected = [v.to_markdown() for v in self.violations if not v.auto_fixed]
        parts: list[str] = []
        for heading, entries in ((_FIXED_HEADING, fixed), (_DETECTED_HEADING, detected)):
            if entries:
                parts.append(heading)
                parts.extend(f"- {entry}\n" for entry in entries)
                parts.append("\n")
        return "".join(parts)


def _get_allow_list() -> dict[str, bool]:
    allow_list = get_config().target_list
    if not allow_list:
        return dict.fromkeys(ALLOWED_TARGETS, True)
    logger.debug("Running only partial targets: %s", allow_list)
    allow_map = dict.fromkeys(ALLOWED_TARGETS, False)
    for target in allow_list.split(","):
        if target not in allow_map:
            logger.warning("Unknown target in config targetlist: %s", target)
        allow_map[target] = True
    return allow_map


def validate_ruleset(
    ruleset: RuleSet, oci_tar_path: str, dockerfile_path: str, docker_tar_path: str
) -> Violations:
    """Check every allowed rule, attempting fixes for failing rules that have one."""
    allow_list = _get_allow_list()
    result = Violations()
    for rule in ruleset.rules:
        if not allow_list.get(rule.target, False):
            continue
        result.checked_count += 1
        success, info = rule.validate(oci_tar_path, dockerfile_path, docker_tar_path)
        if success:
            continue
        result.violation_count += 1
        violation = Violation(rule_id=rule.id)
        if info.fix or rule.fix_instruction:
            result.fixable_count += 1
            violation.fix = info.fix
            try:
                rule.perform_fix()
            except RuleError as exc:
                logger.debug("Fix for rule %s not applied: %s", rule.id, exc)
                violation.auto_fixed = False
            else:
                violation.auto_fixed = True
        result.violations.append(violation)
    return result