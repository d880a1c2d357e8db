"""Rule Evaluator.

Deterministic evaluation of one flag against one snapshot:
- Kill switches
- Environment scope
- Flag dependencies
- Ordered targeting rules (first match wins)
- Stable percentage bucketing
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Optional

from flagengine.core.flags.models import (
    EvaluationContext,
    EvaluationResult,
    FixedOutcome,
    FlagDefinition,
    FlagKind,
    Reason,
    RolloutOutcome,
)
from flagengine.core.flags.snapshot import Snapshot
from flagengine.core.flags.values import FALSE, Value, as_value
from flagengine.utils.metrics import flag_evaluation_errors_total, flag_missing_subject_total

logger = logging.getLogger(__name__)

BUCKET_COUNT = 100
DEFAULT_MAX_DEPENDENCY_DEPTH = 8


def compute_bucket(flag_name: str, subject_id: str) -> int:
    """Bucket (0-99) for a subject on a flag.

    First 32 bits of MD5 over the UTF-8 bytes of ``"<flag>:<subject>"``,
    read as a big-endian unsigned integer, modulo 100. Any implementation
    of the engine must compute exactly this so a subject lands in the same
    bucket everywhere.
    """
    key = f"{flag_name}:{subject_id}"
    digest = hashlib.md5(key.encode("utf-8")).hexdigest()  # nosec B324 - stable rollout hashing
    return int(digest[:8], 16) % BUCKET_COUNT


def coerce_fallback(fallback: Any) -> Value:
    """Caller-supplied fallback as a flag value; unusable fallbacks become false."""
    try:
        return as_value(fallback)
    except ValueError:
        logger.warning(f"Unsupported fallback {fallback!r}, using false")
        return FALSE


class RuleEvaluator:
    """Pure evaluation of flags against a snapshot.

    Holds only configuration; safe to share between threads.
    """

    def __init__(
        self,
        environment: Optional[str] = None,
        max_dependency_depth: int = DEFAULT_MAX_DEPENDENCY_DEPTH,
    ):
        self.environment = environment
        self.max_dependency_depth = max_dependency_depth

    def evaluate(
        self,
        snapshot: Snapshot,
        flag_name: str,
        context: Optional[EvaluationContext] = None,
        fallback: Any = False,
    ) -> EvaluationResult:
        """Evaluate a flag. Never raises.

        Unknown flags resolve to ``fallback`` with ``UNKNOWN_FLAG``; internal
        errors resolve to ``fallback`` with ``DEFAULT``.
        """
        fallback_value = coerce_fallback(fallback)
        try:
            return self._evaluate(
                snapshot, flag_name, context or EvaluationContext(), fallback_value, 0
            )
        except Exception:
            logger.exception(
                f"Evaluation of '{flag_name}' failed, serving fallback",
                extra={"flag": flag_name},
            )
            flag_evaluation_errors_total.labels(stage="evaluator").inc()
            return EvaluationResult(flag_name, fallback_value, Reason.DEFAULT, 0)

    def _evaluate(
        self,
        snapshot: Snapshot,
        flag_name: str,
        context: EvaluationContext,
        fallback: Value,
        depth: int,
    ) -> EvaluationResult:
        flag = snapshot.get(flag_name)
        if flag is None:
            return EvaluationResult(flag_name, fallback, Reason.UNKNOWN_FLAG, 0)

        # Kill switches win over everything else
        if flag.kind == FlagKind.KILL_SWITCH and not flag.enabled:
            return self._result(flag, flag.off_value, Reason.KILL_SWITCH)

        if not flag.enabled or not flag.active_in(self.environment):
            return self._result(flag, flag.off_value, Reason.DEFAULT)

        if not self._dependencies_met(snapshot, flag, context, depth):
            return self._result(flag, flag.off_value, Reason.DEPENDENCY_BLOCKED)

        for rule in flag.rules:
            if not rule.applicable:
                logger.debug(f"Skipping unsupported rule '{rule.rule_id}' on '{flag.name}'")
                continue
            if not rule.matches(context.attributes):
                continue
            if isinstance(rule.outcome, FixedOutcome):
                return self._result(flag, rule.outcome.value, Reason.RULE_MATCH, rule.rule_id)
            if isinstance(rule.outcome, RolloutOutcome):
                percentage = rule.outcome.percentage
                if percentage is None:
                    percentage = flag.rollout_percentage
                return self._rollout(flag, context, percentage, rule.rule_id)

        if flag.rollout_percentage > 0:
            return self._rollout(flag, context, flag.rollout_percentage, None)

        return self._result(flag, flag.default_value, Reason.DEFAULT)

    def _dependencies_met(
        self,
        snapshot: Snapshot,
        flag: FlagDefinition,
        context: EvaluationContext,
        depth: int,
    ) -> bool:
        if not flag.dependencies:
            return True
        if depth >= self.max_dependency_depth:
            logger.warning(
                f"Dependency chain of '{flag.name}' exceeds depth {self.max_dependency_depth}",
                extra={"flag": flag.name},
            )
            return False

        for dep in flag.dependencies:
            if dep.flag_name not in snapshot:
                return False
            resolved = self._evaluate(snapshot, dep.flag_name, context, FALSE, depth + 1)
            if resolved.value != dep.required_value:
                return False
        return True

    def _rollout(
        self,
        flag: FlagDefinition,
        context: EvaluationContext,
        percentage: int,
        rule_id: Optional[str],
    ) -> EvaluationResult:
        if not context.subject_id:
            logger.warning(
                f"Percentage rollout on '{flag.name}' evaluated without a subject id, "
                f"serving default",
                extra={"flag": flag.name},
            )
            flag_missing_subject_total.inc()
            return self._result(flag, flag.default_value, Reason.DEFAULT)

        bucket = compute_bucket(flag.name, context.subject_id)
        value = flag.on_value if bucket < percentage else flag.off_value
        return self._result(flag, value, Reason.PERCENTAGE_ROLLOUT, rule_id)

    @staticmethod
    def _result(
        flag: FlagDefinition,
        value: Value,
        reason: Reason,
        rule_id: Optional[str] = None,
    ) -> EvaluationResult:
        return EvaluationResult(
            flag_name=flag.name,
            value=value,
            reason=reason,
            flag_version=flag.version,
            rule_id=rule_id or None,
        )
