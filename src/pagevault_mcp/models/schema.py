"""Data models for the Page Vault MCP server."""

import datetime
import logging
import uuid
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

# Serialized shapes use camelCase keys (pageId, parentId, updatedAt, ...)
_API_MODEL_CONFIG = {
    "alias_generator": to_camel,
    "populate_by_name": True,
    "validate_assignment": True,
}


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current time with UTC timezone info attached.
    """
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite drops tzinfo on the way in, so every datetime read back from the
    store is naive and is assumed to be UTC.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def generate_id() -> str:
    """Generate an opaque unique identifier for pages and blocks."""
    return str(uuid.uuid4())


class PageType(str, Enum):
    """Kinds of pages in the vault."""

    NOTE = "note"
    NPC = "npc"
    CHARACTER = "character"
    LOCATION = "location"
    ARC = "arc"
    TOOL = "tool"


class BlockType(str, Enum):
    """Kinds of blocks a page tree is built from."""

    SECTION = "section"  # Collapsible container with a title
    PARAGRAPH = "paragraph"  # Free text, the main carrier of link tokens
    HEADING = "heading"  # Heading text with a level in props
    DIVIDER = "divider"  # Horizontal rule, no payload
    TABLE = "table"  # Rows/columns payload


class LinkScope(str, Enum):
    """Which pages a bulk link rewrite touches."""

    PAGE = "page"  # A single page, pageId required
    PAGES = "pages"  # An explicit list of page ids
    ALL = "all"  # Every page containing a candidate


class Page(BaseModel):
    """A titled document with a stable slug."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the page")
    title: str = Field(..., description="Title of the page")
    type: PageType = Field(default=PageType.NOTE, description="Kind of page")
    slug: str = Field(default="page", description="URL-safe permalink, unique")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the page was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the page or its blocks last changed (UTC)"
    )

    model_config = _API_MODEL_CONFIG


class Block(BaseModel):
    """One node of a page's content tree."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the block")
    page_id: str = Field(..., description="Owning page (immutable)")
    parent_id: Optional[str] = Field(
        default=None, description="Parent block on the same page; None for top level"
    )
    sort: int = Field(default=0, ge=0, description="Dense position within the sibling group")
    type: str = Field(..., description="Block type (see BlockType)")
    props: Dict[str, Any] = Field(default_factory=dict, description="Type metadata")
    content: Dict[str, Any] = Field(default_factory=dict, description="Type payload")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = _API_MODEL_CONFIG

    @property
    def payload(self) -> "BlockPayload":
        """Typed view of props/content for this block's type."""
        return decode_payload(self.type, self.props, self.content)


class PageWithBlocks(Page):
    """A page together with all of its blocks in tree order."""

    blocks: List[Block] = Field(default_factory=list)


class BlockPatch(BaseModel):
    """Partial update for a block.

    Only fields explicitly provided are applied; ``parent_id=None`` given
    explicitly moves the block to the top level, while omitting it keeps
    the current parent. Use ``model_fields_set`` to tell the two apart.
    """

    parent_id: Optional[str] = None
    sort: Optional[int] = None
    type: Optional[str] = None
    props: Optional[Dict[str, Any]] = None
    content: Optional[Dict[str, Any]] = None

    model_config = {**_API_MODEL_CONFIG, "extra": "ignore"}


class BlockMove(BaseModel):
    """One entry of a reorder request."""

    id: str
    parent_id: Optional[str] = None
    sort: int = 0

    model_config = {**_API_MODEL_CONFIG, "extra": "ignore"}


class Backlink(BaseModel):
    """A page referring to another page through link tokens."""

    id: str
    title: str
    type: str
    count: int = Field(ge=1)

    model_config = _API_MODEL_CONFIG


class Tag(BaseModel):
    """A page tag: lowercase key plus the latest display casing."""

    name: str = Field(..., description="Canonical lowercase key")
    display_name: str = Field(..., description="Display form, latest casing wins")

    model_config = {**_API_MODEL_CONFIG, "frozen": True}

    def __str__(self) -> str:
        """Return string representation of tag."""
        return self.display_name


# =============================================================================
# Block payloads (typed view over the opaque props/content JSON)
# =============================================================================


class ParagraphPayload(BaseModel):
    kind: Literal["paragraph"] = "paragraph"
    text: str = ""


class HeadingPayload(BaseModel):
    kind: Literal["heading"] = "heading"
    text: str = ""
    level: int = Field(default=1, ge=1, le=6)


class SectionPayload(BaseModel):
    kind: Literal["section"] = "section"
    title: str = ""
    collapsed: bool = False


class DividerPayload(BaseModel):
    kind: Literal["divider"] = "divider"


class TablePayload(BaseModel):
    kind: Literal["table"] = "table"
    rows: List[List[Any]] = Field(default_factory=list)


class UnknownPayload(BaseModel):
    """Payload of a block type this version does not model."""

    kind: Literal["unknown"] = "unknown"
    content: Dict[str, Any] = Field(default_factory=dict)


BlockPayload = Union[
    ParagraphPayload,
    HeadingPayload,
    SectionPayload,
    DividerPayload,
    TablePayload,
    UnknownPayload,
]

_PAYLOAD_TYPES = {
    BlockType.PARAGRAPH.value: ParagraphPayload,
    BlockType.HEADING.value: HeadingPayload,
    BlockType.SECTION.value: SectionPayload,
    BlockType.DIVIDER.value: DividerPayload,
    BlockType.TABLE.value: TablePayload,
}


def decode_payload(
    block_type: str, props: Dict[str, Any], content: Dict[str, Any]
) -> BlockPayload:
    """Decode a block's props/content into its typed payload.

    Malformed fields fall back to their defaults instead of raising, so one
    damaged block never breaks a whole page load.
    """
    model = _PAYLOAD_TYPES.get(block_type)
    if model is None:
        return UnknownPayload(content=dict(content or {}))

    fields = {}
    if model is ParagraphPayload:
        fields = {"text": content.get("text", "")}
    elif model is HeadingPayload:
        fields = {"text": content.get("text", ""), "level": props.get("level", 1)}
    elif model is SectionPayload:
        fields = {
            "title": content.get("title", ""),
            "collapsed": props.get("collapsed", False),
        }
    elif model is TablePayload:
        fields = {"rows": content.get("rows", [])}

    fields = {k: v for k, v in fields.items() if v is not None}
    # Drop only the offending fields so bad metadata never hides the text
    while True:
        try:
            return model(**fields)
        except ValidationError as e:
            bad = {err["loc"][0] for err in e.errors() if err["loc"] and err["loc"][0] in fields}
            if not bad:
                logger.warning(f"Malformed {block_type} payload, using defaults")
                return model()
            logger.warning(f"Malformed {block_type} payload, defaulting {', '.join(sorted(bad))}")
            fields = {k: v for k, v in fields.items() if k not in bad}


def payload_text(payload: BlockPayload) -> str:
    """Searchable text of a payload: paragraph/heading text or section title."""
    if isinstance(payload, (ParagraphPayload, HeadingPayload)):
        return payload.text
    if isinstance(payload, SectionPayload):
        return payload.title
    return ""


def coerce_page_type(value: Union[str, PageType, None]) -> PageType:
    """Parse a page type, raising ValueError for values outside the enum."""
    if isinstance(value, PageType):
        return value
    return PageType(str(value or "").strip().lower())
