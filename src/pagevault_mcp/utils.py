"""Utility functions for the Page Vault MCP server."""
import json
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Prevents SQL LIKE pattern injection where user input containing
    '%' or '_' could match unintended patterns.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for safe use in LIKE clauses

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
        >>> escape_like_pattern("file_name")
        'file\\_name'
    """
    # Use str.translate() for single-pass efficiency
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def like_contains(value: str) -> str:
    """Build an escaped ``%value%`` LIKE pattern (use with ``escape='\\\\'``)."""
    return f"%{escape_like_pattern(value)}%"


def load_json_object(raw: Optional[str], context: str = "") -> Dict[str, Any]:
    """Parse a stored JSON blob, degrading to an empty object.

    Stored props/content may be partially written or hand-edited; display
    code must keep working, so parse failures are logged and swallowed here.
    """
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Unparseable JSON blob{f' in {context}' if context else ''}: {e}")
        return {}
    if not isinstance(value, dict):
        logger.warning(f"JSON blob{f' in {context}' if context else ''} is not an object")
        return {}
    return value


def dump_json_object(value: Optional[Dict[str, Any]]) -> str:
    """Serialize props/content for storage (None becomes ``{}``)."""
    return json.dumps(value or {}, ensure_ascii=False)


def json_fragment(text: str) -> str:
    """How ``text`` appears inside a serialized JSON string (quotes stripped).

    Lets substring matching over stored JSON text find values containing
    quotes, backslashes or control characters.
    """
    return json.dumps(text, ensure_ascii=False)[1:-1]


def collapse_whitespace(text: str) -> str:
    """Collapse every whitespace run (newlines included) to a single space."""
    return " ".join(str(text or "").split())


def count_occurrences(haystack: str, needle: str) -> int:
    """Count non-overlapping occurrences of needle in haystack.

    Uses the length identity ``(len(h) - len(h without needle)) / len(needle)``,
    the same arithmetic the backlink query performs in SQL.
    """
    if not needle or not haystack:
        return 0
    return (len(haystack) - len(haystack.replace(needle, ""))) // len(needle)


def normalize_title_key(title: Optional[str]) -> str:
    """Lookup key for title matching: whitespace-collapsed and case-folded."""
    return collapse_whitespace(title or "").casefold()
