"""Correlation ID management for request tracing.

The correlation id lives in a ContextVar so it follows the request through
the pipeline. Fan-out work runs on executor threads, which do not inherit
context on their own; `submit_with_context` copies it across.
"""

import uuid
from concurrent.futures import Executor, Future
from contextvars import ContextVar, Token, copy_context
from typing import Any, Callable

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    """Set correlation ID in context."""
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    """Reset correlation ID to previous value."""
    correlation_id_var.reset(token)


def submit_with_context(
    executor: Executor,
    fn: Callable[..., Any],
    *args: Any,
    **kwargs: Any,
) -> Future:
    """Submit fn to executor running inside a copy of the caller's context."""
    ctx = copy_context()
    return executor.submit(ctx.run, fn, *args, **kwargs)
