"""SQLAlchemy database models for the Page Vault MCP server."""
import datetime

from sqlalchemy import (Column, DateTime, ForeignKey, Index, Integer, String, Table,
                        Text, create_engine, event)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from pagevault_mcp.config import config
from pagevault_mcp.models.schema import PageType

# Create base class for SQLAlchemy models
Base = declarative_base()

# Association table for tags and pages
page_tags = Table(
    "page_tags",
    Base.metadata,
    Column("page_id", String(64), ForeignKey("pages.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class DBPage(Base):
    """Database model for a page."""
    __tablename__ = "pages"
    id = Column(String(64), primary_key=True, index=True)
    title = Column(Text, nullable=False, index=True)
    type = Column(String(32), default=PageType.NOTE.value, nullable=False)
    slug = Column(String(255), unique=True, nullable=True, index=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, nullable=False, index=True)

    # Relationships
    blocks = relationship(
        "DBBlock",
        back_populates="page",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    tags = relationship(
        "DBTag", secondary=page_tags, back_populates="pages"
    )

    def __repr__(self) -> str:
        """Return string representation of page."""
        return f"<Page(id='{self.id}', title='{self.title}', slug='{self.slug}')>"


class DBBlock(Base):
    """Database model for a block.

    ``parent_id`` is a plain column rather than a foreign key: the tree is
    resolved through an id index in the repositories, and walks over it are
    bounded because the stored chain is not guaranteed to be acyclic.
    """
    __tablename__ = "blocks"
    id = Column(String(64), primary_key=True)
    page_id = Column(
        String(64), ForeignKey("pages.id", ondelete="CASCADE"), nullable=False
    )
    parent_id = Column(String(64), nullable=True)
    sort = Column(Integer, default=0, nullable=False)
    type = Column(String(32), nullable=False)
    props_json = Column(Text, default="{}", nullable=False)
    content_json = Column(Text, default="{}", nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, nullable=False)

    page = relationship("DBPage", back_populates="blocks")

    __table_args__ = (
        Index("ix_blocks_sibling_group", "page_id", "parent_id", "sort"),
        Index("ix_blocks_type", "type"),
    )

    def __repr__(self) -> str:
        """Return string representation of block."""
        return (
            f"<Block(id='{self.id}', page='{self.page_id}', "
            f"parent='{self.parent_id}', sort={self.sort}, type='{self.type}')>"
        )


class DBTag(Base):
    """Database model for a tag."""
    __tablename__ = "tags"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), unique=True, nullable=False)
    display_name = Column(String(64), nullable=False)

    # Relationships
    pages = relationship(
        "DBPage", secondary=page_tags, back_populates="tags"
    )

    def __repr__(self) -> str:
        """Return string representation of tag."""
        return f"<Tag(id={self.id}, name='{self.name}')>"


def _apply_sqlite_pragmas(engine) -> None:
    """Apply PRAGMA settings on every new connection."""

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        # Enforce ON DELETE CASCADE for blocks and page_tags
        cursor.execute("PRAGMA foreign_keys=ON")
        # WAL mode: writes go to separate journal, preventing corruption on crash
        cursor.execute("PRAGMA journal_mode=WAL")
        # NORMAL sync: flush WAL to disk at critical moments (good balance)
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()


def create_db_engine(db_url: str):
    """Create an engine for the given SQLite URL.

    In-memory databases use a single shared connection (StaticPool) so every
    session sees the same data; file databases get a small QueuePool since
    SQLite is single-writer.
    """
    if ":memory:" in db_url:
        engine = create_engine(
            db_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            db_url,
            poolclass=QueuePool,
            pool_size=5,           # Base pool size (concurrent reads)
            max_overflow=10,       # Allow up to 15 total connections under load
            pool_timeout=30,       # Wait up to 30s for a connection
            pool_pre_ping=True,    # Validate connections before use
        )
    _apply_sqlite_pragmas(engine)
    return engine


def init_db(db_url: str = None):
    """Initialize the database and create all tables.

    Args:
        db_url: SQLAlchemy URL. Defaults to ``config.get_db_url()``.

    Returns:
        The configured engine.
    """
    engine = create_db_engine(db_url or config.get_db_url())
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)
