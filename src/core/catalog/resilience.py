"""
Resilient action execution — retries, per-attempt timeout, error categories.

Only transient and degraded failures are retried; everything else fails
on the first attempt. Exhausted policies raise ActionExecutionError so the
caller can record a failure outcome.
"""

from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional

from src.core.catalog.models import ActionDefinition, ErrorCategory, ExecutionResult
from src.core.catalog.registry import ActionHandler, ExecutionContext
from src.core.errors import ActionExecutionError, GateViolation

logger = logging.getLogger(__name__)

_TRANSIENT_PATTERN = re.compile(
    r"\b(timeout|timed out|rate limit|429|502|503|504|temporarily|connection reset|unavailable)\b",
    re.IGNORECASE,
)
_USER_ACTION_PATTERN = re.compile(
    r"\b(not connected|reauthori[sz]e|missing credentials|permission denied|401|403)\b",
    re.IGNORECASE,
)


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception to an ErrorCategory.

    An ``error_category`` attribute on the exception wins; then the type;
    then the message text.
    """
    explicit = getattr(exc, "error_category", None)
    if explicit:
        try:
            return ErrorCategory(explicit)
        except ValueError:
            pass

    if isinstance(exc, GateViolation):
        return ErrorCategory.SAFETY_HALT
    if isinstance(exc, (TimeoutError, FutureTimeout, ConnectionError)):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, PermissionError):
        return ErrorCategory.USER_ACTION_REQUIRED

    message = str(exc)
    if _TRANSIENT_PATTERN.search(message):
        return ErrorCategory.TRANSIENT
    if _USER_ACTION_PATTERN.search(message):
        return ErrorCategory.USER_ACTION_REQUIRED
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ErrorCategory.PERMANENT_LOGIC
    return ErrorCategory.PERMANENT_SYSTEM


class ResilientRunner:
    """Runs a handler under an action's resilience policy."""

    def __init__(self, sleep: Callable[[float], None] = time.sleep) -> None:
        self._sleep = sleep

    def _call_with_timeout(
        self,
        handler: ActionHandler,
        parameters: Dict[str, Any],
        context: ExecutionContext,
        timeout_s: float,
    ) -> Any:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="action")
        try:
            future = pool.submit(handler, parameters, context)
            try:
                return future.result(timeout=timeout_s)
            except FutureTimeout:
                future.cancel()
                raise TimeoutError(
                    f"{context.action_name} timed out after {timeout_s:.0f}s"
                ) from None
        finally:
            pool.shutdown(wait=False)

    def run(
        self,
        definition: ActionDefinition,
        handler: ActionHandler,
        parameters: Dict[str, Any],
        user_id: str,
        decision_id: str,
        conversation_id: str = "",
    ) -> ExecutionResult:
        """Execute with retries.

        Raises:
            ActionExecutionError: After the final failed attempt.
        """
        policy = definition.policy
        started = time.monotonic()
        last_error: Optional[BaseException] = None
        last_category = ErrorCategory.PERMANENT_SYSTEM
        attempt = 0

        for attempt in range(1, max(policy.max_attempts, 1) + 1):
            context = ExecutionContext(
                user_id=user_id,
                decision_id=decision_id,
                action_name=definition.name,
                attempt=attempt,
                conversation_id=conversation_id,
            )
            try:
                data = self._call_with_timeout(handler, parameters, context, policy.timeout_s)
                return ExecutionResult(
                    action_name=definition.name,
                    success=True,
                    data=data,
                    attempts=attempt,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            except Exception as exc:
                last_error = exc
                last_category = classify_error(exc)
                logger.warning(
                    "Action %s attempt %d/%d failed (%s): %s",
                    definition.name, attempt, policy.max_attempts,
                    last_category.value, exc,
                )
                if not last_category.retryable or attempt >= policy.max_attempts:
                    break
                self._sleep(policy.backoff_for(attempt))

        raise ActionExecutionError(
            definition.name,
            str(last_error),
            attempts=attempt,
            error_category=last_category.value,
            decision_id=decision_id,
        ) from last_error
