from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

from rbac_admin.service.errors import BadRequestError
from rbac_admin.storage.common import resolve_sort_field
from rbac_admin.storage.models import Page

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ROLE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_ ]+$")

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
ROLE_NAME_MIN_LENGTH = 2
ROLE_NAME_MAX_LENGTH = 50
MAX_PAGE_SIZE = 100


def validate_user_input(username: Optional[str], email: Optional[str]) -> None:
    """Shape checks that run before any transaction is opened."""
    username = (username or "").strip()
    email = (email or "").strip()
    if not username or not email:
        raise BadRequestError("Username and email are required")
    validate_email(email)
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        raise BadRequestError(
            f"Username must be between {USERNAME_MIN_LENGTH} and {USERNAME_MAX_LENGTH} characters"
        )


def validate_email(email: str) -> None:
    if not EMAIL_PATTERN.match(email.strip()):
        raise BadRequestError("Invalid email format")


def validate_role_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not ROLE_NAME_MIN_LENGTH <= len(name) <= ROLE_NAME_MAX_LENGTH:
        raise BadRequestError(
            f"Role name must be between {ROLE_NAME_MIN_LENGTH} and {ROLE_NAME_MAX_LENGTH} characters"
        )
    if not ROLE_NAME_PATTERN.match(name):
        raise BadRequestError(
            "Role name can only contain letters, numbers, underscores and spaces"
        )
    return name


def validate_pagination(
    page: int = 1,
    limit: int = 10,
    sort_by: Optional[str] = None,
    sort_order: Optional[str] = None,
    *,
    sort_fields: dict[str, str],
) -> Page:
    if page < 1:
        raise BadRequestError("Page must be greater than 0")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise BadRequestError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")
    order = (sort_order or "DESC").upper()
    if order not in ("ASC", "DESC"):
        order = "DESC"
    return Page(
        page=page,
        limit=limit,
        sort_by=resolve_sort_field(sort_by, sort_fields),
        sort_order=order,
    )


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes from query strings are taken to be UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def format_missing_ids(ids) -> str:
    return ", ".join(str(i) for i in ids)
