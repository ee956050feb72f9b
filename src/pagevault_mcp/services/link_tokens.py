"""Inline link tokens: parsing, resolution and repair.

Two token grammars live inside block text:

* unresolved ``[[Label]]``, referring to a page by exact title;
* resolved ``[[page:<id>|<label>]]``, referring to a page by durable ID.

Everything here is a pure text transform; persistence is handled by
``LinkService``. Callers are expected to pass non-empty arguments.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, NamedTuple, Optional, Tuple

from pagevault_mcp.utils import collapse_whitespace, normalize_title_key

logger = logging.getLogger(__name__)

# [[page:ID|[[page:ID|Label]]]] with the same ID at both levels
NESTED_TOKEN_PATTERN = re.compile(
    r"\[\[page:([^\]|\s]+)\|\s*\[\[page:\1\|([^\]]*?)\]\]\s*\]\]"
)
# Any [[...]] token, including one level of nesting inside it
TOKEN_PATTERN = re.compile(r"\[\[(?:\[\[.*?\]\]|.)*?\]\]")
RESOLVED_TOKEN_PATTERN = re.compile(r"\[\[page:([^\]|\s]+)\|([^\]]*)\]\]")
UNRESOLVED_TOKEN_PATTERN = re.compile(r"\[\[(?!page:)([^\[\]]+)\]\]")
CODE_SPAN_PATTERN = re.compile(r"(`[^`]*`)")
WORD_TERM_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

# Placeholders are built from private-use characters, which are neither
# word characters nor plausible search terms.
_PLACEHOLDER_OPEN = "\ue000"
_PLACEHOLDER_CLOSE = "\ue001"
_PLACEHOLDER_DIGIT_BASE = 0xE010
_PLACEHOLDER_PATTERN = re.compile("\ue000([\ue010-\ue019]+)\ue001")


def format_resolved(page_id: str, label: str) -> str:
    """Build a resolved token ``[[page:<id>|<label>]]``."""
    return f"[[page:{page_id}|{label}]]"


def format_unresolved(title: str) -> str:
    """Build an unresolved token ``[[<title>]]``."""
    return f"[[{title}]]"


class ParsedToken(NamedTuple):
    """One token occurrence found in a text."""

    raw: str
    label: str
    page_id: Optional[str]  # None for unresolved [[Title]] tokens
    start: int


def parse_tokens(text: str) -> List[ParsedToken]:
    """List the resolved and unresolved tokens of a text in order."""
    found = []
    for match in RESOLVED_TOKEN_PATTERN.finditer(text or ""):
        found.append(ParsedToken(match.group(0), match.group(2), match.group(1), match.start()))
    for match in UNRESOLVED_TOKEN_PATTERN.finditer(text or ""):
        found.append(ParsedToken(match.group(0), match.group(1), None, match.start()))
    return sorted(found, key=lambda t: t.start)


# =============================================================================
# Resolution
# =============================================================================


def legacy_key_from_href(href: Optional[str]) -> Optional[str]:
    """Normalize an exported-site href into a legacy path key.

    External and fragment-only links have no key. ``/03_PCs/Foo`` and
    ``03_PCs/Foo.html`` both become ``03_PCs/Foo.html``.
    """
    if not href:
        return None
    key = href.strip()
    if key.startswith(("http://", "https://", "#")):
        return None
    key = key.lstrip("/")
    key = key.split("?")[0].split("#")[0]
    if key and not key.endswith(".html"):
        key = f"{key}.html"
    return key or None


@dataclass
class TokenContext:
    """What is known about one link occurrence that needs resolving."""

    label: str = ""
    target_title: Optional[str] = None  # title the link points at, if any
    legacy_key: Optional[str] = None  # path key of the exported link, if any


@dataclass
class TokenResolver:
    """Resolves link occurrences to tokens against known pages.

    Attributes:
        legacy_map: Legacy path key -> page ID.
        title_index: Normalized title key -> page ID
            (see ``normalize_title_key``).
    """

    legacy_map: Mapping[str, str] = field(default_factory=dict)
    title_index: Mapping[str, str] = field(default_factory=dict)

    def resolve(self, context: TokenContext) -> str:
        """Produce the replacement text for one occurrence.

        Priority: legacy path, then normalized title, then an unresolved
        ``[[title]]`` token, then the bare label.
        """
        label = context.label or ""
        if context.legacy_key and context.legacy_key in self.legacy_map:
            page_id = self.legacy_map[context.legacy_key]
            return format_resolved(page_id, label or context.target_title or "Link")

        if context.target_title:
            title = collapse_whitespace(context.target_title)
            page_id = self.title_index.get(normalize_title_key(title))
            if page_id:
                return format_resolved(page_id, label or title)
            return format_unresolved(title)

        return label


def resolve_token(
    context: TokenContext,
    legacy_map: Optional[Mapping[str, str]] = None,
    title_index: Optional[Mapping[str, str]] = None,
) -> str:
    """Shortcut for ``TokenResolver(legacy_map, title_index).resolve(context)``."""
    return TokenResolver(legacy_map or {}, title_index or {}).resolve(context)


def resolve_literal(text: str, label: str, target_page_id: str) -> str:
    """Upgrade every exact ``[[label]]`` to ``[[page:<target>|label]]``.

    Already resolved tokens never match the literal, so they are untouched.
    """
    token = format_unresolved(label)
    if not text or token not in text:
        return text
    return text.replace(token, format_resolved(target_page_id, label))


def normalize_nested_tokens(text: str) -> str:
    """Collapse doubly-wrapped tokens to a single token until nothing changes.

    Every rewrite shortens the text, so the loop reaches a fixed point; the
    length bound only guards against a regex that stops shrinking.
    """
    out = text or ""
    for _ in range(len(out) + 1):
        collapsed = NESTED_TOKEN_PATTERN.sub(r"[[page:\1|\2]]", out)
        if collapsed == out:
            return out
        out = collapsed
    logger.warning("Nested token repair did not reach a fixed point")
    return out


# =============================================================================
# Linkify
# =============================================================================


def _term_pattern(term: str, case_sensitive: bool) -> "re.Pattern[str]":
    flags = 0 if case_sensitive else re.IGNORECASE
    escaped = re.escape(term)
    if WORD_TERM_PATTERN.match(term):
        # Hyphenated terms must not match inside a longer hyphenated word
        boundary = r"[\w-]" if "-" in term else r"\w"
        return re.compile(rf"(?<!{boundary}){escaped}(?!{boundary})", flags)
    return re.compile(escaped, flags)


def _placeholder(index: int) -> str:
    digits = "".join(chr(_PLACEHOLDER_DIGIT_BASE + int(d)) for d in str(index))
    return f"{_PLACEHOLDER_OPEN}{digits}{_PLACEHOLDER_CLOSE}"


def _placeholder_index(encoded: str) -> int:
    return int("".join(str(ord(ch) - _PLACEHOLDER_DIGIT_BASE) for ch in encoded))


def linkify_text(
    text: str, term: str, target_page_id: str, case_sensitive: bool = False
) -> Tuple[str, int]:
    """Turn standalone occurrences of ``term`` into resolved tokens.

    Alphanumeric terms (plus ``_`` and ``-``) only match on word boundaries;
    other terms match as literal substrings. Text inside inline code spans
    and inside existing ``[[...]]`` tokens is never touched. The matched
    text (original casing) becomes the token label.

    Returns:
        ``(new_text, replacements)``; zero replacements means no change.
    """
    if not text or not term:
        return text, 0

    pattern = _term_pattern(term, case_sensitive)
    replacements = 0
    pieces = []

    def link(match: "re.Match[str]") -> str:
        nonlocal replacements
        replacements += 1
        return format_resolved(target_page_id, match.group(0))

    # Odd indices are the captured code spans
    for index, segment in enumerate(CODE_SPAN_PATTERN.split(text)):
        if index % 2 == 1:
            pieces.append(segment)
            continue
        protected: List[str] = []

        def stash(match: "re.Match[str]") -> str:
            protected.append(match.group(0))
            return _placeholder(len(protected) - 1)

        masked = TOKEN_PATTERN.sub(stash, segment)
        masked = pattern.sub(link, masked)
        pieces.append(
            _PLACEHOLDER_PATTERN.sub(
                lambda m: protected[_placeholder_index(m.group(1))], masked
            )
        )

    if not replacements:
        return text, 0
    return "".join(pieces), replacements


def count_unresolved(text: str, label: str) -> int:
    """Number of exact ``[[label]]`` tokens in a text."""
    token = format_unresolved(label)
    return (text or "").count(token)


def token_targets(text: str) -> Dict[str, int]:
    """Count resolved tokens per target page ID."""
    counts: Dict[str, int] = {}
    for token in parse_tokens(text):
        if token.page_id:
            counts[token.page_id] = counts.get(token.page_id, 0) + 1
    return counts
