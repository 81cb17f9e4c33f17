"""Helpers for correlation identifiers in logs and audit entries."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from uuid import uuid4

from media_catalog.config.logging_config import (
    bind_context,
    get_bound_context,
    unbind_context,
)

CORRELATION_ID_KEY = "correlation_id"


@contextmanager
def correlation_scope(existing_id: str | None = None) -> Iterator[str]:
    """Bind a correlation identifier for the lifetime of the context.

    Nested scopes reuse the outer identifier unless one is passed explicitly,
    so a repair run and the per-message work it triggers share one id.
    """

    outer_id = get_bound_context().get(CORRELATION_ID_KEY)
    correlation_id = existing_id or outer_id or str(uuid4())
    bind_context(**{CORRELATION_ID_KEY: correlation_id})
    try:
        yield correlation_id
    finally:
        if outer_id is None:
            unbind_context(CORRELATION_ID_KEY)
        else:
            bind_context(**{CORRELATION_ID_KEY: outer_id})


def current_correlation_id() -> str | None:
    """Return the correlation id bound in the current context, if any."""

    value = get_bound_context().get(CORRELATION_ID_KEY)
    return str(value) if value is not None else None


__all__ = ["CORRELATION_ID_KEY", "correlation_scope", "current_correlation_id"]
