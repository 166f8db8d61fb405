"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import Request

from stream_speculator.context import AppContext


def get_context(request: Request) -> AppContext:
    """Return the :class:`AppContext` built at application startup."""
    return request.app.state.context
