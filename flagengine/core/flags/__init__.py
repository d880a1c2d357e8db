"""Feature Flags Module.

Provides flag storage, evaluation and distribution:
- Versioned flag store with immutable snapshots
- Deterministic rule evaluation and percentage bucketing
- Local propagation cache with bounded staleness
- Batched evaluation analytics
- Application-facing client and decorator
"""

from flagengine.core.flags.values import (
    BoolValue,
    StringValue,
    NumberValue,
    Value,
    TRUE,
    FALSE,
    as_value,
)
from flagengine.core.flags.models import (
    FlagKind,
    Reason,
    Operator,
    Condition,
    FixedOutcome,
    RolloutOutcome,
    TargetingRule,
    Dependency,
    FlagDefinition,
    EvaluationContext,
    EvaluationResult,
)
from flagengine.core.flags.snapshot import Snapshot
from flagengine.core.flags.store import (
    FlagStore,
    SnapshotListener,
    LoggingSnapshotListener,
)
from flagengine.core.flags.evaluator import RuleEvaluator, compute_bucket
from flagengine.core.flags.propagation import (
    SnapshotSource,
    StoreSnapshotSource,
    HttpSnapshotSource,
    FileSnapshotSource,
    PropagationCache,
)
from flagengine.core.flags.analytics import (
    EvaluationRecord,
    AnalyticsSink,
    LoggingAnalyticsSink,
    InMemoryAnalyticsSink,
    HttpAnalyticsSink,
    AnalyticsEmitter,
)
from flagengine.core.flags.client import FlagClient, feature_flag

__all__ = [
    # Values
    "BoolValue",
    "StringValue",
    "NumberValue",
    "Value",
    "TRUE",
    "FALSE",
    "as_value",
    # Model
    "FlagKind",
    "Reason",
    "Operator",
    "Condition",
    "FixedOutcome",
    "RolloutOutcome",
    "TargetingRule",
    "Dependency",
    "FlagDefinition",
    "EvaluationContext",
    "EvaluationResult",
    "Snapshot",
    # Store
    "FlagStore",
    "SnapshotListener",
    "LoggingSnapshotListener",
    # Evaluation
    "RuleEvaluator",
    "compute_bucket",
    # Propagation
    "SnapshotSource",
    "StoreSnapshotSource",
    "HttpSnapshotSource",
    "FileSnapshotSource",
    "PropagationCache",
    # Analytics
    "EvaluationRecord",
    "AnalyticsSink",
    "LoggingAnalyticsSink",
    "InMemoryAnalyticsSink",
    "HttpAnalyticsSink",
    "AnalyticsEmitter",
    # Client
    "FlagClient",
    "feature_flag",
]
