"""Identifier naming conventions shared by the compiler, CRUD and relation layers."""

from __future__ import annotations

import re
from typing import Any

_ACRONYM_BOUNDARY = re.compile(r"([A-Z]+)([A-Z][a-z])")
_WORD_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS = re.compile(r"[\s\-]+")


def to_snake_case(name: str) -> str:
    """Convert camelCase, PascalCase or spaced names to snake_case.

    Args:
        name: Name to convert (e.g., "clientId", "InvoiceItem", "Line item")

    Returns:
        snake_case name (e.g., "client_id", "invoice_item", "line_item")
    """
    result = _ACRONYM_BOUNDARY.sub(r"\1_\2", name.strip())
    result = _WORD_BOUNDARY.sub(r"\1_\2", result)
    result = _SEPARATORS.sub("_", result).lower()
    # Collapse multiple consecutive underscores
    while "__" in result:
        result = result.replace("__", "_")
    return result


def to_camel_case(name: str) -> str:
    """Convert snake_case to camelCase. Names without underscores pass through."""
    if "_" not in name:
        return name
    head, *rest = [part for part in name.split("_") if part]
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def keys_to_snake(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` with snake_case keys."""
    return {to_snake_case(k): v for k, v in data.items()}


def keys_to_camel(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` with camelCase keys."""
    return {to_camel_case(k): v for k, v in data.items()}


def pluralize(name: str) -> str:
    """Naive English plural used for derived relation names."""
    if name.endswith(("s", "x", "z", "ch", "sh")):
        return f"{name}es"
    if name.endswith("y") and len(name) > 1 and name[-2] not in "aeiou":
        return f"{name[:-1]}ies"
    return f"{name}s"


def junction_table_name(entity_a: str, entity_b: str) -> str:
    """Deterministic many-to-many table name for two entity names.

    The pair is sorted, so (A, B) and (B, A) yield the same table.

    Args:
        entity_a: First entity name
        entity_b: Second entity name

    Returns:
        Junction table name (e.g., "product_tag")
    """
    first, second = sorted((to_snake_case(entity_a), to_snake_case(entity_b)))
    return f"{first}_{second}"


def junction_columns(entity_a: str, entity_b: str) -> tuple[str, str]:
    """Junction column names for (entity_a, entity_b), in that order.

    A self-referencing pair gets ``source_``/``target_`` prefixes so the two
    columns stay distinct.
    """
    a, b = to_snake_case(entity_a), to_snake_case(entity_b)
    if a == b:
        return f"source_{a}_id", f"target_{b}_id"
    return f"{a}_id", f"{b}_id"
