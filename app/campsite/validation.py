"""
Declarative input constraints.

Each form or payload gets a tuple of `Field` rules; `validate(payload, rules)`
returns a list of human-readable messages (empty when the payload is fine).
Nothing here touches the database so rule sets can be tested on plain dicts.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any


@dataclass(frozen=True)
class Field:
    name: str
    label: str
    required: bool = False
    kind: str = "str"  # str | int | decimal | email
    min_length: int | None = None
    max_length: int | None = None
    min_value: float | None = None
    max_value: float | None = None


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def coerce(value: Any, kind: str) -> Any:
    """Convert a raw form value to the field's kind. Raises ValueError."""
    if kind == "int":
        if isinstance(value, bool):
            raise ValueError("not an integer")
        if isinstance(value, int):
            return value
        return int(str(value).strip())
    if kind == "decimal":
        try:
            d = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValueError("not a number") from e
        if not d.is_finite():
            raise ValueError("not a number")
        return d
    return str(value).strip()


def validate(payload: dict, rules: tuple[Field, ...], *, partial: bool = False) -> list[str]:
    """
    Check `payload` against `rules`.

    With `partial=True` absent keys are skipped (used for updates), but a key
    that is present must still satisfy its rule.
    """
    errors: list[str] = []
    for rule in rules:
        if partial and rule.name not in payload:
            continue
        raw = payload.get(rule.name)
        if _is_blank(raw):
            if rule.required:
                errors.append(f"{rule.label} is required.")
            continue

        try:
            value = coerce(raw, rule.kind)
        except ValueError:
            kind = "a whole number" if rule.kind == "int" else "a number"
            errors.append(f"{rule.label} must be {kind}.")
            continue

        if rule.kind == "email" and not _EMAIL_RE.match(value):
            errors.append(f"{rule.label} must be a valid email address.")
            continue

        if isinstance(value, str):
            if rule.min_length is not None and len(value) < rule.min_length:
                errors.append(f"{rule.label} must be at least {rule.min_length} characters.")
            if rule.max_length is not None and len(value) > rule.max_length:
                errors.append(f"{rule.label} must be at most {rule.max_length} characters.")
        else:
            if rule.min_value is not None and value < rule.min_value:
                errors.append(f"{rule.label} must be at least {rule.min_value:g}.")
            if rule.max_value is not None and value > rule.max_value:
                errors.append(f"{rule.label} must be at most {rule.max_value:g}.")
    return errors
