"""Evaluation SDK.

The object application code holds: evaluates flags against the local
propagation cache, applies local overrides, and reports each evaluation
to analytics. Nothing on this path performs network I/O or raises.
"""

from __future__ import annotations

import functools
import inspect
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, TypeVar

from flagengine.core.flags.analytics import AnalyticsEmitter
from flagengine.core.flags.evaluator import coerce_fallback
from flagengine.core.flags.models import EvaluationContext, EvaluationResult, Reason
from flagengine.core.flags.propagation import PropagationCache
from flagengine.core.flags.values import Value, as_value, to_python
from flagengine.utils.metrics import (
    flag_evaluation_duration_seconds,
    flag_evaluation_errors_total,
    flag_evaluations_total,
)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class FlagClient:
    """Application-facing flag client.

    Example:
        client = FlagClient(cache, emitter)
        if client.is_enabled("new-checkout", EvaluationContext("user-42")):
            ...
    """

    def __init__(
        self,
        cache: PropagationCache,
        emitter: Optional[AnalyticsEmitter] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ):
        self.cache = cache
        self.emitter = emitter
        self._overrides: Dict[str, Value] = {}
        self._overrides_lock = threading.Lock()
        for name, value in (overrides or {}).items():
            self.set_override(name, value)

    # Overrides

    def set_override(self, flag_name: str, value: Any) -> None:
        """Force a flag to ``value`` in this process, e.g. in tests or local dev."""
        coerced = as_value(value)
        with self._overrides_lock:
            self._overrides[flag_name] = coerced
        logger.info(f"Override set for '{flag_name}': {coerced}", extra={"flag": flag_name})

    def remove_override(self, flag_name: str) -> bool:
        with self._overrides_lock:
            removed = self._overrides.pop(flag_name, None) is not None
        if removed:
            logger.info(f"Override removed for '{flag_name}'", extra={"flag": flag_name})
        return removed

    def clear_overrides(self) -> None:
        with self._overrides_lock:
            self._overrides.clear()

    @property
    def overrides(self) -> Dict[str, Value]:
        with self._overrides_lock:
            return dict(self._overrides)

    # Evaluation

    def evaluate(
        self,
        flag_name: str,
        context: Optional[EvaluationContext] = None,
        fallback: Any = False,
    ) -> EvaluationResult:
        """Evaluate one flag. Always returns a result."""
        start = time.perf_counter()
        try:
            override = self._overrides.get(flag_name)
            if override is not None:
                result = EvaluationResult(flag_name, override, Reason.OVERRIDE, 0)
            else:
                result = self.cache.evaluate(flag_name, context, fallback)
        except Exception:
            logger.exception(f"Flag client failed evaluating '{flag_name}'", extra={"flag": flag_name})
            flag_evaluation_errors_total.labels(stage="client").inc()
            result = EvaluationResult(flag_name, coerce_fallback(fallback), Reason.DEFAULT, 0)

        flag_evaluation_duration_seconds.observe(time.perf_counter() - start)
        self._record(result, context)
        return result

    def bulk_evaluate(
        self,
        flag_names: Iterable[str],
        context: Optional[EvaluationContext] = None,
        fallback: Any = False,
    ) -> Dict[str, EvaluationResult]:
        """Evaluate several flags against a single snapshot."""
        names = list(flag_names)
        start = time.perf_counter()
        overrides = self.overrides
        try:
            results = self.cache.bulk_evaluate(
                [n for n in names if n not in overrides], context, fallback
            )
        except Exception:
            logger.exception("Flag client failed on bulk evaluation")
            flag_evaluation_errors_total.labels(stage="client").inc()
            value = coerce_fallback(fallback)
            results = {n: EvaluationResult(n, value, Reason.DEFAULT, 0) for n in names}

        for name in names:
            if name in overrides:
                results[name] = EvaluationResult(name, overrides[name], Reason.OVERRIDE, 0)

        flag_evaluation_duration_seconds.observe(time.perf_counter() - start)
        ordered = {name: results[name] for name in names}
        for result in ordered.values():
            self._record(result, context)
        return ordered

    def _record(self, result: EvaluationResult, context: Optional[EvaluationContext]) -> None:
        flag_evaluations_total.labels(reason=result.reason.value).inc()
        if self.emitter is not None:
            self.emitter.emit(result, context)

    def is_enabled(
        self,
        flag_name: str,
        context: Optional[EvaluationContext] = None,
        default: bool = False,
    ) -> bool:
        """True when the flag resolves to boolean true."""
        return self.evaluate(flag_name, context, default).enabled

    def variant(
        self,
        flag_name: str,
        context: Optional[EvaluationContext] = None,
        default: Any = "control",
    ) -> Any:
        """The flag's value as a plain Python object; ``default`` for unknown flags."""
        return to_python(self.evaluate(flag_name, context, default).value)


def feature_flag(
    flag_name: str,
    client: FlagClient,
    default: bool = False,
    fallback: Optional[Callable[..., Any]] = None,
    context_extractor: Optional[Callable[..., EvaluationContext]] = None,
) -> Callable[[F], F]:
    """Decorator to gate function execution behind a boolean flag.

    Works for plain and ``async`` functions.

    Args:
        flag_name: Name of the feature flag
        client: Client used for evaluation
        default: Value assumed when the flag is unknown
        fallback: Called instead when the flag is off; otherwise None is returned
        context_extractor: Builds the EvaluationContext from the call arguments

    Example:
        @feature_flag("new-pricing", client, context_extractor=lambda user: EvaluationContext(user.id))
        def price(user):
            ...
    """

    def _enabled(args: tuple, kwargs: dict) -> bool:
        context = None
        if context_extractor is not None:
            try:
                context = context_extractor(*args, **kwargs)
            except Exception as e:
                logger.warning(f"Failed to extract flag context: {e}")
        return client.is_enabled(flag_name, context, default)

    def decorator(func: F) -> F:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                if _enabled(args, kwargs):
                    return await func(*args, **kwargs)
                if fallback is not None:
                    result = fallback(*args, **kwargs)
                    return await result if inspect.isawaitable(result) else result
                logger.debug(f"Feature flag '{flag_name}' is off, skipping {func.__name__}")
                return None

            return async_wrapper  # type: ignore

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            if _enabled(args, kwargs):
                return func(*args, **kwargs)
            if fallback is not None:
                return fallback(*args, **kwargs)
            logger.debug(f"Feature flag '{flag_name}' is off, skipping {func.__name__}")
            return None

        return wrapper  # type: ignore

    return decorator
