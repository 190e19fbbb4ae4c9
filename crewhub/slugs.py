"""
URL slug allocation for teams.

Slugs are derived from the team name and must be globally unique. The
existence check here is advisory: two allocations of the same name in the
same instant can both see the candidate as free, so callers that insert
must still treat a unique-constraint violation at commit as a collision and
retry with :func:`disambiguate`.
"""
import re
import secrets
import time

from sqlalchemy import select

from crewhub.errors import ValidationError
from crewhub.models import Team, db

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def slugify(name: str) -> str:
    """
    Turn a team name into a URL-safe slug.

    Lower-cases the name, collapses every run of characters outside
    ``[a-z0-9]`` into a single hyphen and trims hyphens from both ends.

    Raises:
        ValidationError: If nothing usable is left
    """
    slug = _NON_ALNUM.sub("-", (name or "").lower()).strip("-")
    if not slug:
        raise ValidationError("Team name must contain at least one letter or digit")
    return slug


def disambiguate(slug: str, with_random: bool = False) -> str:
    """Append a time-derived base-36 suffix to ``slug``."""
    suffix = _base36(int(time.time() * 1000))
    if with_random:
        suffix += secrets.token_hex(2)
    return f"{slug}-{suffix}"


def slug_exists(slug: str, exclude_team_id: int | None = None) -> bool:
    stmt = select(Team.id).where(Team.slug == slug)
    if exclude_team_id is not None:
        stmt = stmt.where(Team.id != exclude_team_id)
    return db.session.execute(stmt.limit(1)).first() is not None


def allocate_slug(name: str, exclude_team_id: int | None = None) -> str:
    """
    Derive a slug for ``name`` that no other team currently uses.

    Args:
        name: Team display name
        exclude_team_id: Team being renamed; its own row does not count as a clash

    Returns:
        str: The plain slug, or the slug with a disambiguator appended
    """
    slug = slugify(name)
    if not slug_exists(slug, exclude_team_id):
        return slug
    candidate = disambiguate(slug)
    # Same name allocated twice within one millisecond
    if slug_exists(candidate, exclude_team_id):
        candidate = disambiguate(slug, with_random=True)
    return candidate
