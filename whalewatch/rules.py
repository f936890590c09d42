"""Rule sets: loading from YAML files or repositories, verifying and running rules."""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import yaml

from whalewatch.environment import is_unsafe_mode
from whalewatch.runner.python_runner import Runner, TemplateData, new_python_runner

logger = logging.getLogger(__name__)

ALLOWED_CATEGORIES = ("negative", "positive")
ALLOWED_SCOPES = ("output", "buildtime")
ALLOWED_TARGETS = ("command", "os", "fs")

_RULE_KEYS = {
    "scope": "scope",
    "category": "category",
    "instruction": "instruction",
    "description": "description",
    "long_description": "long_description",
    "id": "id",
    "target": "target",
    "fix_instruction": "fix_instruction",
}


class RuleError(ValueError):
    """Raised when a rule or rule set is invalid or cannot be loaded."""


@dataclass
class ViolationInfo:
    details: str = ""
    fix: str = ""


def _check_allowed(value: str, allowed: tuple[str, ...]) -> str | None:
    if value in allowed:
        return None
    quoted = " ".join(json.dumps(item) for item in allowed)
    return f"Invalid value {value} (Allowed: [{quoted}])"


@dataclass
class Rule:
    scope: str = ""
    category: str = ""
    instruction: str = ""
    description: str = ""
    long_description: str = ""
    id: str = ""
    target: str = ""
    runner: Runner | None = field(default=None, compare=False, repr=False)
    fix_instruction: str = ""

    def _require_runner(self) -> Runner:
        if self.runner is None:
            raise RuleError(f"Rule {self.id} has no runner")
        return self.runner

    def add_runner(self) -> None:
        """Attach a Python runner for the rule's target."""
        self.runner = new_python_runner(self.target)

    def validate(
        self, oci_tar_path: str, dockerfile_path: str, docker_tar_path: str
    ) -> tuple[bool, ViolationInfo]:
        """Run the rule; return whether it passed and details of a violation."""
        context = TemplateData(
            dockerfile_path=dockerfile_path, oci_image=oci_tar_path, docker_image=docker_tar_path
        )
        try:
            self._require_runner().run(context, self.instruction)
        except Exception as exc:  # any failure of the check is a violation
            return False, ViolationInfo(details=str(exc))
        return True, ViolationInfo()

    def verify(self) -> None:
        """Check and normalise id, category, scope and target."""
        if not self.id:
            raise RuleError("No id set for rule")
        self.category = self.category.lower()
        problem = _check_allowed(self.category, ALLOWED_CATEGORIES)
        if problem:
            raise RuleError(f"Category: {problem}")
        self.scope = self.scope.lower()
        problem = _check_allowed(self.scope, ALLOWED_SCOPES)
        if problem:
            raise RuleError(f"Scope: {problem}")
        self.target = self.target.lower()
        problem = _check_allowed(self.target, ALLOWED_TARGETS)
        if problem:
            raise RuleError(f"Target: {problem}")

    def perform_fix(self) -> None:
        """Run the rule's fix instruction."""
        if not self.fix_instruction:
            raise RuleError("No fixinstruction present")
        self._require_runner().run_fix(self.fix_instruction)


@dataclass
class RuleSet:
    name: str = ""
    rules: list[Rule] = field(default_factory=list)
    tmp_dir_path: str = ""

    def __enter__(self) -> RuleSet:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Remove the temporary checkout the rule set was loaded from, if any."""
        if self.tmp_dir_path:
            shutil.rmtree(self.tmp_dir_path, ignore_errors=True)


def _scalar(raw: Mapping[str, Any], key: str) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Mapping, list)):
        raise RuleError(f"{key} must be a scalar value")
    return str(value)


def _rule_from_mapping(raw: Any) -> Rule:
    if not isinstance(raw, Mapping):
        raise RuleError("each rule must be a mapping")
    return Rule(**{attr: _scalar(raw, key) for key, attr in _RULE_KEYS.items()})


def load_ruleset_from_content(data: bytes | str) -> RuleSet:
    """Parse a YAML rule set, attaching runners and verifying every rule."""
    try:
        raw = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise RuleError(f"Could not parse ruleset: {exc}") from exc
    if raw is None:
        return RuleSet()
    if not isinstance(raw, Mapping):
        raise RuleError("ruleset must be a mapping")
    raw_rules = raw.get("rules") or []
    if not isinstance(raw_rules, list):
        raise RuleError("rules must be a list")
    ruleset = RuleSet(name=_scalar(raw, "name"), rules=[_rule_from_mapping(r) for r in raw_rules])
    for rule in ruleset.rules:
        rule.add_runner()
        rule.verify()
        if "assert" not in rule.instruction:
            logger.warning(
                "Instruction does not contain an assert. This rule therefore will never be "
                "checked properly: %s",
                rule.instruction,
            )
    return ruleset


def _load_ruleset_from_file(path: str) -> RuleSet:
    with open(path, "rb") as handle:
        return load_ruleset_from_content(handle.read())


def _git(*args: str) -> str:
    try:
        result = subprocess.run(["git", *args], capture_output=True, text=True)
    except OSError as exc:
        raise RuleError(f"Could not run git: {exc}") from exc
    if result.returncode != 0:
        raise RuleError(f"git {args[0]} failed: {result.stderr.strip()}")
    return result.stdout.strip()


def _load_ruleset_from_repository(repository_url: str) -> RuleSet:
    with tempfile.TemporaryDirectory(prefix="ruleset") as checkout:
        _git("clone", "--depth", "1", repository_url, checkout)
        head = _git("-C", checkout, "rev-parse", "HEAD")
        logger.info("Using remote state %s for repository '%s'", head, repository_url)
        for name in sorted(os.listdir(checkout)):
            path = os.path.join(checkout, name)
            if not name.endswith(".yaml") or not os.path.isfile(path):
                logger.debug("Skipped remote file %s", name)
                continue
            logger.debug("Parsing remote file %s", name)
            with open(path, "rb") as handle:
                data = handle.read()
            logger.debug("Parsed file %s of size %d", name, len(data))
            return load_ruleset_from_content(data)
    return RuleSet()


def load_ruleset(location: str) -> RuleSet:
    """Load a rule set from a git repository URL or a local YAML file."""
    if location.startswith("http://"):
        logger.debug("Provided ruleset location is a (unsafe) git repository!")
        if not is_unsafe_mode():
            raise RuleError(
                "Could not load ruleset from unsafe repository (unsafe mode is disabled)"
            )
        return _load_ruleset_from_repository(location)
    if location.startswith("https://"):
        logger.debug("Provided ruleset location is a git repository!")
        return _load_ruleset_from_repository(location)
    logger.debug("Provided ruleset location is a filepath!")
    return _load_ruleset_from_file(location)