"""
SOP Engine — Template Checker

Static checks for SOP templates before they are handed to operators.
Catches authoring mistakes that would otherwise surface mid-execution:
branches to missing steps, required evidence with no capture type,
conditional steps without rules.

Checks run against the raw authoring format (camelCase keys, steps in
declared order), so problems the loader would paper over, such as
unsorted `order` values, are still reported.

Usage:
    python -m sop_engine.cli check templates/line_clearance.yaml

From code:
    from sop_engine.template_check import check_template, load_template_data
    result = check_template(load_template_data("line_clearance.yaml"))
    if not result.valid:
        print(result.summary())
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from sop_engine.types import ConditionOperator, EvidenceType, SOPTemplate


# ═══════════════════════════════════════════════════════════════════
# Result types
# ═══════════════════════════════════════════════════════════════════

@dataclass
class Issue:
    level: str       # "error", "warning"
    location: str    # "template", "step:s3", "step:s3.conditionalLogic[0]"
    code: str
    message: str

    def __str__(self):
        icon = {"error": "✗", "warning": "⚠"}.get(self.level, "?")
        return f"  {icon} {self.location} [{self.code}] {self.message}"


@dataclass
class CheckResult:
    issues: list[Issue] = field(default_factory=list)

    @property
    def errors(self) -> list[Issue]:
        return [i for i in self.issues if i.level == "error"]

    @property
    def warnings(self) -> list[Issue]:
        return [i for i in self.issues if i.level == "warning"]

    @property
    def valid(self) -> bool:
        return len(self.errors) == 0

    def codes(self) -> list[str]:
        return [i.code for i in self.issues]

    def add(self, level: str, location: str, code: str, message: str):
        self.issues.append(Issue(level, location, code, message))

    def summary(self) -> str:
        lines = []
        if self.valid:
            lines.append(f"✓ Valid ({len(self.warnings)} warnings)")
        else:
            lines.append(f"✗ {len(self.errors)} errors, {len(self.warnings)} warnings")
        for issue in self.issues:
            lines.append(str(issue))
        return "\n".join(lines)


_EVIDENCE_TYPES = {t.value for t in EvidenceType if t != EvidenceType.SKIPPED}
_OPERATORS = {op.value for op in ConditionOperator}


def load_template_data(path: str | Path) -> dict[str, Any]:
    """Read a template file. YAML loader, so JSON files load too."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: template must be a mapping, got {type(data).__name__}")
    return data


# ═══════════════════════════════════════════════════════════════════
# Checks
# ═══════════════════════════════════════════════════════════════════

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_step(r: CheckResult, step: dict, index: int, step_ids: set[str]) -> None:
    loc = f"step:{step.get('id') or index}"
    label = f"Step {index + 1}"

    if not str(step.get("title") or "").strip():
        r.add("error", loc, "STEP_TITLE_REQUIRED", f"{label} must have a title")
    if not str(step.get("description") or "").strip():
        r.add("warning", loc, "STEP_DESCRIPTION_REQUIRED", f"{label} has no description")

    evidence_type = step.get("evidenceType")
    if evidence_type and evidence_type not in _EVIDENCE_TYPES:
        r.add("error", loc, "UNKNOWN_EVIDENCE_TYPE",
              f"Unknown evidence type '{evidence_type}'. Valid: {sorted(_EVIDENCE_TYPES)}")
    if step.get("evidenceRequired") and not evidence_type:
        r.add("error", loc, "EVIDENCE_TYPE_REQUIRED",
              f"{label} requires evidence but no type specified")

    config = step.get("evidenceConfig") or {}
    min_value, max_value = config.get("minValue"), config.get("maxValue")
    bounds = [v for v in (min_value, max_value) if v is not None]
    if any(not _is_number(v) for v in bounds):
        r.add("error", loc, "INVALID_RANGE", "minValue and maxValue must be numbers")
    elif len(bounds) == 2 and min_value > max_value:
        r.add("error", loc, "INVALID_RANGE",
              f"minValue {min_value} is greater than maxValue {max_value}")
    if evidence_type == EvidenceType.CHECKBOX.value and not config.get("options"):
        r.add("warning", loc, "OPTIONS_REQUIRED", f"{label} is a checkbox with no options")
    pattern = config.get("expectedFormat")
    if pattern:
        try:
            re.compile(pattern)
        except re.error as e:
            r.add("error", loc, "INVALID_PATTERN", f"expectedFormat is not a valid regex: {e}")

    rules = step.get("conditionalLogic") or []
    if step.get("isConditional") and not rules:
        r.add("error", loc, "CONDITIONAL_LOGIC_REQUIRED",
              f"{label} is marked conditional but has no logic defined")
    if rules and not step.get("isConditional"):
        r.add("warning", loc, "CONDITIONAL_LOGIC_IGNORED",
              f"{label} has conditional logic but is not marked conditional; rules are ignored")

    for j, rule in enumerate(rules):
        rloc = f"{loc}.conditionalLogic[{j}]"
        if rule.get("condition") not in _OPERATORS:
            r.add("error", rloc, "UNKNOWN_CONDITION",
                  f"Unknown condition '{rule.get('condition')}'. Valid: {sorted(_OPERATORS)}")
        target = rule.get("nextStepId")
        if target not in step_ids:
            r.add("error", rloc, "UNKNOWN_NEXT_STEP", f"Rule routes to unknown step '{target}'")

    if step.get("requiresApproval") and not step.get("approvalRoles"):
        r.add("error", loc, "APPROVAL_ROLES_REQUIRED",
              f"{label} requires approval but no roles specified")


def _check_order(r: CheckResult, steps: list[dict]) -> None:
    orders = [s.get("order") for s in steps]
    if any(not isinstance(o, int) or isinstance(o, bool) for o in orders):
        r.add("error", "template", "INVALID_STEP_ORDER", "Every step needs an integer 'order'")
        return
    if len(set(orders)) != len(orders):
        r.add("error", "template", "DUPLICATE_STEP_ORDER", "Step 'order' values must be unique")
        return
    if orders != sorted(orders):
        r.add("warning", "template", "STEP_ORDER_NOT_MONOTONIC",
              "Steps are not declared in 'order'; they will be re-sorted on load")
    if sorted(orders) != list(range(1, len(orders) + 1)):
        r.add("warning", "template", "STEP_ORDER_NOT_SEQUENTIAL",
              "Step orders should be sequential starting from 1")


def _check_routes(r: CheckResult, steps: list[dict]) -> None:
    ordered = sorted(
        (s for s in steps if isinstance(s.get("order"), int)),
        key=lambda s: s["order"],
    )
    position = {s.get("id"): i for i, s in enumerate(ordered)}
    for step in ordered:
        if not step.get("isConditional"):
            continue
        for j, rule in enumerate(step.get("conditionalLogic") or []):
            target = rule.get("nextStepId")
            if target in position and position[target] <= position[step.get("id")]:
                r.add("warning", f"step:{step.get('id')}.conditionalLogic[{j}]", "BACKWARD_BRANCH",
                      f"Rule routes backward to step '{target}'")


def check_template(template: dict[str, Any] | SOPTemplate) -> CheckResult:
    """Run every template check. Accepts the raw authoring dict or a loaded SOPTemplate."""
    data = template.to_dict() if isinstance(template, SOPTemplate) else template
    r = CheckResult()

    if not str(data.get("name") or "").strip():
        r.add("error", "template", "NAME_REQUIRED", "Template name is required")

    steps = data.get("steps")
    if not isinstance(steps, list) or not steps:
        r.add("error", "template", "STEPS_REQUIRED", "Template must have at least one step")
        return r

    step_ids: set[str] = set()
    for i, step in enumerate(steps):
        if not isinstance(step, dict):
            r.add("error", f"step:{i}", "INVALID_STEP", f"Step must be a mapping, got {type(step).__name__}")
            continue
        step_id = step.get("id")
        if not step_id:
            r.add("error", f"step:{i}", "STEP_ID_REQUIRED", f"Step {i + 1} has no id")
        elif step_id in step_ids:
            r.add("error", f"step:{step_id}", "DUPLICATE_STEP_ID", f"Duplicate step id '{step_id}'")
        else:
            step_ids.add(step_id)

    steps = [s for s in steps if isinstance(s, dict)]
    for i, step in enumerate(steps):
        _check_step(r, step, i, step_ids)

    _check_order(r, steps)
    _check_routes(r, steps)

    if data.get("requires_dual_signoff") and steps:
        last = max(steps, key=lambda s: s.get("order") if isinstance(s.get("order"), int) else -1)
        dual = (last.get("evidenceConfig") or {}).get("dualSignature")
        if not dual or not (dual.get("role1") and dual.get("role2")):
            r.add("warning", f"step:{last.get('id')}", "DUAL_SIGNOFF_ROLES_DEFAULTED",
                  "Dual sign-off template's final step has no role config; default roles apply")

    return r
