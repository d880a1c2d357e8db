"""Flag data model.

Provides the immutable records the engine works on:
- Flag definitions and their targeting rules
- Evaluation context
- Evaluation results and reason codes
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union

from flagengine.core.flags.values import (
    FALSE,
    TRUE,
    Value,
    as_value,
    value_from_dict,
)

logger = logging.getLogger(__name__)


class FlagKind(str, Enum):
    """Kind of flag. Drives fail-safe policy, not rule evaluation."""
    RELEASE = "release"        # Gradual rollout of new features
    EXPERIMENT = "experiment"  # A/B testing
    OPS = "ops"                # Operational switches
    PERMISSION = "permission"  # Access control
    KILL_SWITCH = "kill_switch"  # Emergency off switch, always wins


class Reason(str, Enum):
    DEFAULT = "DEFAULT"
    RULE_MATCH = "RULE_MATCH"
    PERCENTAGE_ROLLOUT = "PERCENTAGE_ROLLOUT"
    DEPENDENCY_BLOCKED = "DEPENDENCY_BLOCKED"
    KILL_SWITCH = "KILL_SWITCH"
    UNKNOWN_FLAG = "UNKNOWN_FLAG"
    OVERRIDE = "OVERRIDE"


class Operator(str, Enum):
    EQUALS = "equals"
    IN = "in"
    RANGE = "range"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        logger.warning(f"Ignoring malformed timestamp: {raw!r}")
        return None


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_kind(raw: Any, name: str) -> "FlagKind":
    if raw is None:
        return FlagKind.RELEASE
    try:
        return FlagKind(raw)
    except ValueError:
        # Kind only drives fail-safe policy; evaluate as a release flag
        logger.warning(f"Flag '{name}' has unknown kind {raw!r}, treating as release")
        return FlagKind.RELEASE


def _same_kind(left: Any, right: Any) -> bool:
    """True when two attribute values may be compared for equality."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool)
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return True
    return type(left) is type(right)


def _is_number(raw: Any) -> bool:
    return isinstance(raw, (int, float)) and not isinstance(raw, bool)


@dataclass(frozen=True)
class Condition:
    """One attribute comparison. A rule's predicate is the AND of its conditions."""
    attribute: str
    operator: Union[Operator, str]
    value: Any = None
    values: Tuple[Any, ...] = ()
    min: Optional[float] = None
    max: Optional[float] = None

    def __post_init__(self):
        if isinstance(self.operator, str) and not isinstance(self.operator, Operator):
            try:
                object.__setattr__(self, "operator", Operator(self.operator))
            except ValueError:
                pass  # kept verbatim; such a condition never matches
        if not isinstance(self.values, tuple):
            object.__setattr__(self, "values", tuple(self.values))

    def matches(self, attributes: Mapping[str, Any]) -> bool:
        if self.attribute not in attributes:
            return False
        actual = attributes[self.attribute]

        if self.operator == Operator.EQUALS:
            return _same_kind(actual, self.value) and actual == self.value
        if self.operator == Operator.IN:
            return any(_same_kind(actual, v) and actual == v for v in self.values)
        if self.operator == Operator.RANGE:
            if not _is_number(actual):
                return False
            if self.min is not None and actual < self.min:
                return False
            if self.max is not None and actual >= self.max:
                return False
            return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        op = self.operator.value if isinstance(self.operator, Operator) else self.operator
        data: Dict[str, Any] = {"attribute": self.attribute, "operator": op}
        if op == Operator.EQUALS.value:
            data["value"] = self.value
        elif op == Operator.IN.value:
            data["values"] = list(self.values)
        elif op == Operator.RANGE.value:
            data["min"] = self.min
            data["max"] = self.max
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            attribute=data.get("attribute", ""),
            operator=data.get("operator", ""),
            value=data.get("value"),
            values=tuple(data.get("values") or ()),
            min=data.get("min"),
            max=data.get("max"),
        )


@dataclass(frozen=True)
class FixedOutcome:
    """Serve a fixed value when the rule matches."""
    value: Value

    def __post_init__(self):
        object.__setattr__(self, "value", as_value(self.value))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "fixed", "value": self.value.to_dict()}


@dataclass(frozen=True)
class RolloutOutcome:
    """Bucket the subject when the rule matches.

    ``percentage=None`` falls back to the flag-level rollout percentage.
    """
    percentage: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "rollout", "percentage": self.percentage}


@dataclass(frozen=True)
class UnknownOutcome:
    """Outcome written by a newer management service that this engine cannot apply."""
    kind: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind}


Outcome = Union[FixedOutcome, RolloutOutcome, UnknownOutcome]


def outcome_from_dict(data: Dict[str, Any]) -> Outcome:
    kind = data.get("type")
    if kind == "fixed":
        return FixedOutcome(value_from_dict(data.get("value")))
    if kind == "rollout":
        return RolloutOutcome(percentage=data.get("percentage"))
    return UnknownOutcome(kind=str(kind))


@dataclass(frozen=True)
class TargetingRule:
    """Predicate + outcome. Rules are evaluated in authored order."""
    conditions: Tuple[Condition, ...]
    outcome: Outcome
    rule_id: str = ""
    description: str = ""

    def __post_init__(self):
        if not isinstance(self.conditions, tuple):
            object.__setattr__(self, "conditions", tuple(self.conditions))

    @property
    def applicable(self) -> bool:
        """False when the rule uses an operator or outcome this engine does not know."""
        if isinstance(self.outcome, UnknownOutcome):
            return False
        return all(isinstance(c.operator, Operator) for c in self.conditions)

    def matches(self, attributes: Mapping[str, Any]) -> bool:
        return all(c.matches(attributes) for c in self.conditions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.rule_id,
            "description": self.description,
            "conditions": [c.to_dict() for c in self.conditions],
            "outcome": self.outcome.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetingRule":
        return cls(
            conditions=tuple(Condition.from_dict(c) for c in data.get("conditions", [])),
            outcome=outcome_from_dict(data.get("outcome") or {}),
            rule_id=data.get("id", ""),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class Dependency:
    """The flag only evaluates normally while ``flag_name`` resolves to ``required_value``."""
    flag_name: str
    required_value: Value = TRUE

    def __post_init__(self):
        object.__setattr__(self, "required_value", as_value(self.required_value))

    def to_dict(self) -> Dict[str, Any]:
        return {"flag": self.flag_name, "required_value": self.required_value.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Dependency":
        return cls(
            flag_name=data.get("flag", ""),
            required_value=value_from_dict(data.get("required_value", True)),
        )


@dataclass(frozen=True)
class FlagDefinition:
    """Versioned, immutable description of one flag."""
    name: str
    kind: FlagKind = FlagKind.RELEASE
    version: int = 0
    default_value: Optional[Value] = None  # None means the off value
    on_value: Value = TRUE
    off_value: Value = FALSE
    rules: Tuple[TargetingRule, ...] = ()
    rollout_percentage: int = 0
    dependencies: Tuple[Dependency, ...] = ()
    environment_scope: FrozenSet[str] = frozenset()
    enabled: bool = True
    fail_safe_value: Optional[Value] = None
    description: str = ""
    owner: str = ""
    tags: FrozenSet[str] = frozenset()
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    expected_retirement_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "kind", FlagKind(self.kind))
        object.__setattr__(self, "on_value", as_value(self.on_value))
        object.__setattr__(self, "off_value", as_value(self.off_value))
        default = self.off_value if self.default_value is None else as_value(self.default_value)
        object.__setattr__(self, "default_value", default)
        if self.fail_safe_value is not None:
            object.__setattr__(self, "fail_safe_value", as_value(self.fail_safe_value))
        object.__setattr__(self, "rules", tuple(self.rules))
        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        object.__setattr__(self, "environment_scope", frozenset(self.environment_scope))
        object.__setattr__(self, "tags", frozenset(self.tags))

    def with_version(self, version: int, updated_at: Optional[datetime] = None) -> "FlagDefinition":
        """Copy of this definition stamped with a new version."""
        return replace(self, version=version, updated_at=updated_at or _now())

    def active_in(self, environment: Optional[str]) -> bool:
        if not self.environment_scope or environment is None:
            return True
        return environment in self.environment_scope

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "version": self.version,
            "default_value": self.default_value.to_dict(),
            "on_value": self.on_value.to_dict(),
            "off_value": self.off_value.to_dict(),
            "rules": [r.to_dict() for r in self.rules],
            "rollout_percentage": self.rollout_percentage,
            "dependencies": [d.to_dict() for d in self.dependencies],
            "environment_scope": sorted(self.environment_scope),
            "enabled": self.enabled,
            "fail_safe_value": self.fail_safe_value.to_dict() if self.fail_safe_value else None,
            "description": self.description,
            "owner": self.owner,
            "tags": sorted(self.tags),
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
            "expected_retirement_at": _format_datetime(self.expected_retirement_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlagDefinition":
        """Create from dictionary. Unknown keys are ignored."""
        off_value = value_from_dict(data.get("off_value", False))
        default_raw = data.get("default_value")
        fail_safe_raw = data.get("fail_safe_value")
        return cls(
            name=data["name"],
            kind=_parse_kind(data.get("kind"), data["name"]),
            version=int(data.get("version", 0)),
            default_value=value_from_dict(default_raw) if default_raw is not None else off_value,
            on_value=value_from_dict(data.get("on_value", True)),
            off_value=off_value,
            rules=tuple(TargetingRule.from_dict(r) for r in data.get("rules", [])),
            rollout_percentage=data.get("rollout_percentage", 0),
            dependencies=tuple(Dependency.from_dict(d) for d in data.get("dependencies", [])),
            environment_scope=frozenset(data.get("environment_scope", [])),
            enabled=data.get("enabled", True),
            fail_safe_value=value_from_dict(fail_safe_raw) if fail_safe_raw is not None else None,
            description=data.get("description", ""),
            owner=data.get("owner", ""),
            tags=frozenset(data.get("tags", [])),
            created_at=_parse_datetime(data.get("created_at")) or _now(),
            updated_at=_parse_datetime(data.get("updated_at")) or _now(),
            expected_retirement_at=_parse_datetime(data.get("expected_retirement_at")),
        )


@dataclass(frozen=True)
class EvaluationContext:
    """Subject and attributes supplied at evaluation time."""
    subject_id: Optional[str] = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {"subject_id": self.subject_id, "attributes": dict(self.attributes)}


@dataclass(frozen=True)
class EvaluationResult:
    """Result of one flag evaluation. Every evaluation produces one."""
    flag_name: str
    value: Value
    reason: Reason
    flag_version: int = 0
    rule_id: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self.value == TRUE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag": self.flag_name,
            "value": self.value.value,
            "value_type": self.value.type_name,
            "reason": self.reason.value,
            "version": self.flag_version,
            "rule_id": self.rule_id,
        }

