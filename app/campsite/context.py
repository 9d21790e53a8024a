"""
Per-request rendering context.

Templates never reach into globals for the current user or notices; each
handler renders through `render_page`, which builds a fresh `PageContext`
from this request's user and its one-shot flash messages.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from flask import current_app, g, get_flashed_messages, render_template

from app.campsite.models import User
from app.campsite.security import ensure_csrf_token


@dataclass(frozen=True)
class PageContext:
    current_user: User | None
    success: list[str] = field(default_factory=list)
    error: list[str] = field(default_factory=list)
    csrf_token: str = ""


def build_page_context() -> PageContext:
    """Pops pending notices off the session; the next request will not see them."""
    success: list[str] = []
    error: list[str] = []
    for category, message in get_flashed_messages(with_categories=True):
        (error if category == "error" else success).append(message)
    return PageContext(
        current_user=getattr(g, "current_user", None),
        success=success,
        error=error,
        csrf_token=ensure_csrf_token() if current_app.config.get("CSRF_ENABLED", True) else "",
    )


def render_page(template: str, status: int = 200, **values: Any):
    return render_template(template, page=build_page_context(), **values), status
