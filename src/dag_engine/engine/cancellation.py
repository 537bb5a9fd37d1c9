"""Cooperative cancellation and the bounded self-fix retry policy.

Self-fix is a local decision inside one step's handler: when a tool-like
operation fails and the handler is about to ask the user for help, it may
instead tell the model to try its own fix, a bounded number of times per run.
The attempt counter lives in the shared context so it survives a resume. Handlers
reach the run's policy as ``ctx.self_fix``; its budget comes from
`RunOptions.max_self_fix_retries`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from dag_engine.engine.config import clamp_self_fix_retries
from dag_engine.engine.errors import RunCancelled

if TYPE_CHECKING:
    from dag_engine.engine.context import CancellationCheck, RunContext

logger = logging.getLogger(__name__)

SELF_FIX_ATTEMPTS_KEY = "__self_fix_attempts"
SELF_FIX_INSTRUCTION = (
    "The last tool call failed. Proceed with your suggested fix: retry the tool with "
    "corrected arguments or use another tool as needed. Do not ask the user again for "
    "this retry."
)
RETRYABLE_REQUEST_TYPES = frozenset({"confirmation", "other"})


async def raise_if_cancelled(
    is_cancelled: CancellationCheck | None, run_id: str | None = None
) -> None:
    if is_cancelled is not None and await is_cancelled():
        raise RunCancelled(run_id)


def is_tool_result_failure(result: object) -> bool:
    """True if a tool result reports failure.

    A failure is a non-empty ``error`` string, a non-zero ``exitCode`` or an HTTP
    4xx/5xx ``statusCode`` (or ``status``).
    """

    if not isinstance(result, Mapping):
        return False
    error = result.get("error")
    if isinstance(error, str) and error.strip():
        return True
    exit_code = result.get("exitCode")
    if isinstance(exit_code, int) and not isinstance(exit_code, bool) and exit_code != 0:
        return True
    status = result.get("statusCode", result.get("status"))
    if isinstance(status, int) and not isinstance(status, bool) and 400 <= status <= 599:
        return True
    return False


class SelfFixPolicy:
    """Bounded per-run retry counter for failing tool calls."""

    def __init__(self, max_retries: int = 0) -> None:
        self.max_retries = clamp_self_fix_retries(max_retries)

    def attempts(self, ctx: RunContext) -> int:
        value = ctx.store.get(SELF_FIX_ATTEMPTS_KEY, 0)
        return value if isinstance(value, int) else 0

    def should_continue(
        self,
        ctx: RunContext,
        *,
        last_result: object,
        request_type: str = "other",
    ) -> dict[str, Any] | None:
        """Return a synthetic "retry the fix" outcome, or None to pause as usual.

        Consumes one attempt when it returns an outcome.
        """

        if not is_tool_result_failure(last_result):
            return None
        if request_type not in RETRYABLE_REQUEST_TYPES:
            return None
        used = self.attempts(ctx)
        if used >= self.max_retries:
            return None
        ctx.store.set(SELF_FIX_ATTEMPTS_KEY, used + 1)
        logger.info(
            "Self-fix retry instead of pausing",
            extra={"run_id": ctx.run_id, "attempt": used + 1, "max_retries": self.max_retries},
        )
        return {"_selfFixContinue": True, "instruction": SELF_FIX_INSTRUCTION}
