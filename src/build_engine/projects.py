"""Project identity: slug derivation and collision checks."""

import re
from typing import Iterable

MAX_PROJECT_ID_LENGTH = 50

_VALID_PROJECT_ID = re.compile(r"^[a-z0-9][a-z0-9\-_]*[a-z0-9]$|^[a-z0-9]$")


class ProjectIdentityError(Exception):
    """Raised when a project title cannot produce a usable, unique id."""
    pass


def sanitize_project_name(title: str) -> str:
    """Turn a free-form title into a filesystem-safe slug.

    Lowercases, collapses whitespace into dashes, drops anything outside
    ``[a-z0-9-_]``, trims dashes at both ends and truncates to 50 characters.
    """
    slug = title.strip().lower()
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"[^a-z0-9\-_]", "", slug)
    slug = slug.strip("-")
    return slug[:MAX_PROJECT_ID_LENGTH].rstrip("-")


def is_valid_project_id(project_id: str) -> bool:
    return bool(_VALID_PROJECT_ID.match(project_id))


def allocate_project_id(title: str, existing_ids: Iterable[str]) -> str:
    """Derive the id for a new project.

    Args:
        title: Project title entered by the operator.
        existing_ids: Ids of projects that already exist.

    Returns:
        The sanitized project id.

    Raises:
        ProjectIdentityError: If the slug is empty, malformed or already taken.
    """
    project_id = sanitize_project_name(title)
    if not project_id:
        raise ProjectIdentityError(f"Project title '{title}' does not contain any usable characters.")
    if not is_valid_project_id(project_id):
        raise ProjectIdentityError(
            f"Project id '{project_id}' must start and end with a letter or digit."
        )
    if project_id in set(existing_ids):
        raise ProjectIdentityError(f"A project named '{project_id}' already exists.")
    return project_id
