"""Slug derivation and uniqueness for page permalinks."""
import logging
import re
import unicodedata
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from pagevault_mcp.config import config
from pagevault_mcp.models.db_models import DBPage

logger = logging.getLogger(__name__)

DEFAULT_SLUG = "page"
SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")

# Swedish letters map to their base vowel before decomposition
_TRANSLITERATIONS = str.maketrans({
    "Å": "A",
    "Ä": "A",
    "Ö": "O",
    "å": "a",
    "ä": "a",
    "ö": "o",
})
_NON_SLUG_RUN = re.compile(r"[^a-z0-9]+")


def slugify_title(title: Optional[str]) -> str:
    """Derive a URL-safe, lowercase-kebab slug from a page title.

    The mapping is deterministic so permalinks stay stable across versions.

    Example:
        >>> slugify_title("Ärlig Öl & Bröd!")
        'arlig-ol-brod'
        >>> slugify_title("???")
        'page'
    """
    s = str(title or "").translate(_TRANSLITERATIONS)
    s = unicodedata.normalize("NFKD", s)
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    s = _NON_SLUG_RUN.sub("-", s.lower())
    s = s.strip("-")
    return s or DEFAULT_SLUG


def _slug_taken(session: Session, slug: str, exclude_page_id: Optional[str]) -> bool:
    query = select(DBPage.id).where(DBPage.slug == slug)
    if exclude_page_id:
        query = query.where(DBPage.id != exclude_page_id)
    return session.scalar(query.limit(1)) is not None


def ensure_unique_slug(
    session: Session,
    base_slug: Optional[str],
    exclude_page_id: Optional[str] = None,
    max_attempts: Optional[int] = None,
) -> str:
    """Return ``base_slug`` or the first free ``base-N`` variant.

    Probes ``base``, ``base-2``, ``base-3``... up to ``max_attempts`` before
    falling back to a short random suffix, so allocation always terminates.

    Args:
        session: Session the caller's transaction runs in.
        base_slug: Slug derived from the title.
        exclude_page_id: Page whose own slug does not count as a collision
            (used when regenerating a page's slug).
        max_attempts: Probe bound; defaults to ``config.slug_max_attempts``.
    """
    base = base_slug or DEFAULT_SLUG
    if not _slug_taken(session, base, exclude_page_id):
        return base

    limit = max_attempts if max_attempts is not None else config.slug_max_attempts
    i = 2
    while i < limit:
        candidate = f"{base}-{i}"
        if not _slug_taken(session, candidate, exclude_page_id):
            return candidate
        i += 1

    fallback = f"{base}-{uuid.uuid4().hex[:8]}"
    logger.warning(f"Slug probing exhausted for '{base}', using random suffix: {fallback}")
    return fallback


def is_valid_slug(slug: Optional[str]) -> bool:
    """Check that a slug is non-empty lowercase-kebab."""
    return bool(slug) and SLUG_PATTERN.fullmatch(slug) is not None
