"""Write-path validation for flag definitions.

Every check appends to a list of violations instead of stopping at the first
one, so the management API can report everything that is wrong with a
definition in a single round trip.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from flagengine.core.flags.models import (
    Condition,
    Dependency,
    FixedOutcome,
    FlagDefinition,
    FlagKind,
    Operator,
    RolloutOutcome,
    TargetingRule,
)
from flagengine.core.flags.values import FALSE, TRUE, VALUE_TYPES, Value, value_from_dict

FLAG_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]+$")


def _is_number(raw) -> bool:
    return isinstance(raw, (int, float)) and not isinstance(raw, bool)


def _check_percentage(value, label: str, violations: List[str]) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        violations.append(f"{label} must be an integer, got {value!r}")
    elif not 0 <= value <= 100:
        violations.append(f"{label} must be between 0 and 100, got {value}")


def _check_condition(condition: Condition, label: str, violations: List[str]) -> None:
    if not condition.attribute:
        violations.append(f"{label}: attribute name is empty")

    if not isinstance(condition.operator, Operator):
        violations.append(f"{label}: unknown operator {condition.operator!r}")
        return

    if condition.operator == Operator.EQUALS:
        if condition.value is None:
            violations.append(f"{label}: 'equals' requires a value")
    elif condition.operator == Operator.IN:
        if not condition.values:
            violations.append(f"{label}: 'in' requires a non-empty value list")
    elif condition.operator == Operator.RANGE:
        if condition.min is None and condition.max is None:
            violations.append(f"{label}: 'range' requires min and/or max")
        for bound_name in ("min", "max"):
            bound = getattr(condition, bound_name)
            if bound is not None and not _is_number(bound):
                violations.append(f"{label}: range {bound_name} must be a number, got {bound!r}")
        if (
            _is_number(condition.min)
            and _is_number(condition.max)
            and condition.min > condition.max
        ):
            violations.append(f"{label}: range min {condition.min} exceeds max {condition.max}")


def _check_rule(rule: TargetingRule, index: int, violations: List[str]) -> None:
    label = f"rule[{index}]" + (f" ({rule.rule_id})" if rule.rule_id else "")
    for j, condition in enumerate(rule.conditions):
        _check_condition(condition, f"{label} condition[{j}]", violations)

    outcome = rule.outcome
    if isinstance(outcome, RolloutOutcome):
        if outcome.percentage is not None:
            _check_percentage(outcome.percentage, f"{label} rollout percentage", violations)
    elif not isinstance(outcome, FixedOutcome):
        violations.append(f"{label}: unknown outcome type {getattr(outcome, 'kind', outcome)!r}")


def validate_definition(definition: FlagDefinition) -> List[str]:
    """Check a single definition in isolation. Returns all violations."""
    violations: List[str] = []

    if not definition.name:
        violations.append("flag name is empty")
    elif not FLAG_NAME_PATTERN.match(definition.name):
        violations.append(
            f"flag name {definition.name!r} may only contain letters, digits, '_', '.', ':' and '-'"
        )

    _check_percentage(definition.rollout_percentage, "rollout_percentage", violations)

    for label in ("default_value", "on_value", "off_value"):
        if not isinstance(getattr(definition, label), VALUE_TYPES):
            violations.append(f"{label} must be a bool, string or number value")

    if definition.fail_safe_value is not None:
        if not isinstance(definition.fail_safe_value, VALUE_TYPES):
            violations.append("fail_safe_value must be a bool, string or number value")
        if definition.kind not in (FlagKind.OPS, FlagKind.KILL_SWITCH):
            violations.append(
                f"fail_safe_value is only honoured for ops and kill_switch flags, "
                f"not {definition.kind.value}"
            )

    for i, rule in enumerate(definition.rules):
        _check_rule(rule, i, violations)

    seen: set = set()
    for dep in definition.dependencies:
        if not dep.flag_name:
            violations.append("dependency flag name is empty")
            continue
        if dep.flag_name == definition.name:
            violations.append(f"flag {definition.name!r} depends on itself")
        if dep.flag_name in seen:
            violations.append(f"duplicate dependency on {dep.flag_name!r}")
        seen.add(dep.flag_name)

    return violations


def find_dependency_cycle(flags: Mapping[str, FlagDefinition]) -> Optional[List[str]]:
    """Return one dependency cycle as a list of names (first == last), or None.

    Dependencies on flags that do not exist are ignored here; they evaluate as
    unmet rather than forming a cycle.
    """
    white, grey, black = 0, 1, 2
    color: Dict[str, int] = {name: white for name in flags}

    for root in sorted(flags):
        if color[root] != white:
            continue
        # Iterative DFS; each frame is (name, iterator over its dependency names)
        path: List[str] = [root]
        color[root] = grey
        stack = [(root, iter([d.flag_name for d in flags[root].dependencies]))]
        while stack:
            name, children = stack[-1]
            child = next(children, None)
            if child is None:
                color[name] = black
                stack.pop()
                path.pop()
                continue
            if child not in flags:
                continue
            if color[child] == grey:
                return path[path.index(child):] + [child]
            if color[child] == white:
                color[child] = grey
                path.append(child)
                stack.append((child, iter([d.flag_name for d in flags[child].dependencies])))
    return None


def validate_update(
    current: Mapping[str, FlagDefinition],
    definitions: Sequence[FlagDefinition],
) -> List[str]:
    """Validate a write of one or more definitions against the current flag set."""
    violations: List[str] = []

    names_seen: set = set()
    for definition in definitions:
        if definition.name in names_seen:
            violations.append(f"duplicate flag name {definition.name!r} in update")
        names_seen.add(definition.name)
        for problem in validate_definition(definition):
            violations.append(
                f"{definition.name}: {problem}" if len(definitions) > 1 else problem
            )

    merged = dict(current)
    for definition in definitions:
        merged[definition.name] = definition
    cycle = find_dependency_cycle(merged)
    if cycle:
        violations.append("dependency cycle: " + " -> ".join(cycle))

    return violations


_DECODE_ERRORS = (AttributeError, KeyError, TypeError, ValueError)

# Stands in for a rule that failed to decode so later rule indices stay aligned
_PLACEHOLDER_RULE = TargetingRule(conditions=(), outcome=FixedOutcome(FALSE))


def decode_definition(data: Mapping[str, Any]) -> Tuple[FlagDefinition, List[str]]:
    """Build a definition from a management API payload.

    Unlike :meth:`FlagDefinition.from_dict`, which serves the read path and
    tolerates anything it does not understand, this collects every decode
    problem. Fields that fail are replaced by their defaults so that
    :func:`validate_update` can still report the rest.
    """
    problems: List[str] = []

    def decode_value(label: str, default: Optional[Value]) -> Optional[Value]:
        raw = data.get(label)
        if raw is None:
            return default
        try:
            return value_from_dict(raw)
        except ValueError as e:
            problems.append(f"{label}: {e}")
            return default

    def decode_list(label: str) -> List[Any]:
        items = data.get(label)
        if items is None:
            return []
        if not isinstance(items, list):
            problems.append(f"{label} must be a list, got {type(items).__name__}")
            return []
        return items

    kind = FlagKind.RELEASE
    raw_kind = data.get("kind")
    if raw_kind is not None:
        try:
            kind = FlagKind(raw_kind)
        except ValueError:
            problems.append(
                f"unknown flag kind {raw_kind!r}, expected one of "
                + ", ".join(k.value for k in FlagKind)
            )

    rules: List[TargetingRule] = []
    for i, raw in enumerate(decode_list("rules")):
        try:
            rules.append(TargetingRule.from_dict(raw))
        except _DECODE_ERRORS as e:
            problems.append(f"rule[{i}]: {e}")
            rules.append(_PLACEHOLDER_RULE)

    dependencies: List[Dependency] = []
    for i, raw in enumerate(decode_list("dependencies")):
        try:
            dependencies.append(Dependency.from_dict(raw))
        except _DECODE_ERRORS as e:
            problems.append(f"dependency[{i}]: {e}")

    retirement = None
    raw_retirement = data.get("expected_retirement_at")
    if raw_retirement is not None:
        try:
            retirement = datetime.fromisoformat(str(raw_retirement))
        except ValueError:
            problems.append(f"expected_retirement_at is not an ISO-8601 date: {raw_retirement!r}")

    off_value = decode_value("off_value", FALSE)
    definition = FlagDefinition(
        name=data.get("name") or "",
        kind=kind,
        default_value=decode_value("default_value", None),
        on_value=decode_value("on_value", TRUE),
        off_value=off_value,
        rules=tuple(rules),
        rollout_percentage=data.get("rollout_percentage", 0),
        dependencies=tuple(dependencies),
        environment_scope=frozenset(data.get("environment_scope") or ()),
        enabled=data.get("enabled", True),
        fail_safe_value=decode_value("fail_safe_value", None),
        description=data.get("description") or "",
        owner=data.get("owner") or "",
        tags=frozenset(data.get("tags") or ()),
        expected_retirement_at=retirement,
    )
    return definition, problems
