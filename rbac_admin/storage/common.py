"""Storage helpers shared between the memory and postgres implementations.

Sort whitelists live here so both backends order results identically; the
service layer only ever hands over keys from these maps.
"""

from __future__ import annotations

import math
from typing import Optional

# API sort keys -> entity attribute / column name
USER_SORT_FIELDS = {
    "id": "id",
    "username": "username",
    "email": "email",
    "firstName": "first_name",
    "lastName": "last_name",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "lastLoginAt": "last_login_at",
}

ROLE_SORT_FIELDS = {
    "id": "id",
    "name": "name",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}

PERMISSION_SORT_FIELDS = {
    "id": "id",
    "name": "name",
    "module": "module",
    "action": "action",
    "createdAt": "created_at",
}

DEFAULT_SORT_FIELD = "createdAt"


def resolve_sort_field(requested: Optional[str], allowed: dict[str, str]) -> str:
    """Return ``requested`` if whitelisted, else the default sort key."""

    if requested and requested in allowed:
        return requested
    if DEFAULT_SORT_FIELD in allowed:
        return DEFAULT_SORT_FIELD
    return "id"


def normalize_identifier(value: Optional[str]) -> str:
    """Usernames and emails are unique case-insensitively and stored trimmed/lowercased."""

    return (value or "").strip().lower()


def total_pages(total: int, limit: int) -> int:
    if limit <= 0:
        return 0
    return math.ceil(total / limit)


def contains_ci(haystack: Optional[str], needle: str) -> bool:
    return bool(haystack) and needle.lower() in haystack.lower()
