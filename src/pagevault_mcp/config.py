"""Configuration module for the Page Vault MCP server."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from pagevault_mcp import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, lives alongside the default vault location
_USER_ENV = Path.home() / ".pagevault" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class PageVaultConfig(BaseModel):
    """Configuration for the Page Vault server."""

    # Base directory for the project
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("PAGEVAULT_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("PAGEVAULT_DATABASE_PATH", "data/vault/vault.sqlite")
        )
    )
    # When True, the store lives in an in-memory SQLite database (tests, demos)
    in_memory_db: bool = Field(
        default_factory=lambda: _env_bool("PAGEVAULT_IN_MEMORY_DB", "false")
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("PAGEVAULT_SERVER_NAME", "pagevault-mcp"))
    server_version: str = Field(default=__version__)

    # Search configuration
    search_limit: int = Field(
        default_factory=lambda: _env_int("PAGEVAULT_SEARCH_LIMIT", 30)
    )
    search_max_limit: int = Field(
        default_factory=lambda: _env_int("PAGEVAULT_SEARCH_MAX_LIMIT", 1000)
    )
    snippet_length: int = Field(
        default_factory=lambda: _env_int("PAGEVAULT_SNIPPET_LENGTH", 140)
    )
    per_page_match_limit: int = Field(
        default_factory=lambda: _env_int("PAGEVAULT_PER_PAGE_MATCH_LIMIT", 5)
    )
    # Context window around a match: [index - before, index + len(term) + after]
    excerpt_before: int = Field(
        default_factory=lambda: _env_int("PAGEVAULT_EXCERPT_BEFORE", 60)
    )
    excerpt_after: int = Field(
        default_factory=lambda: _env_int("PAGEVAULT_EXCERPT_AFTER", 80)
    )
    # Upper bound on ancestor walks; stored parent chains are not guaranteed acyclic
    section_path_max_depth: int = Field(
        default_factory=lambda: _env_int("PAGEVAULT_SECTION_PATH_MAX_DEPTH", 32)
    )

    # Slug allocation: probe base, base-2, ... before a random suffix
    slug_max_attempts: int = Field(
        default_factory=lambda: _env_int("PAGEVAULT_SLUG_MAX_ATTEMPTS", 100_000)
    )
    # Max pages returned by the token occurrence listing
    occurrence_limit: int = Field(
        default_factory=lambda: _env_int("PAGEVAULT_OCCURRENCE_LIMIT", 100)
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "PageVaultConfig":
        """Reject limits that would make search or slug allocation meaningless."""
        for name in (
            "search_limit",
            "search_max_limit",
            "snippet_length",
            "per_page_match_limit",
            "section_path_max_depth",
            "slug_max_attempts",
            "occurrence_limit",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.excerpt_before < 0 or self.excerpt_after < 0:
            raise ValueError("excerpt_before and excerpt_after must be >= 0")
        if self.search_limit > self.search_max_limit:
            logger.warning(
                "search_limit (%d) exceeds search_max_limit (%d); results will be clamped",
                self.search_limit,
                self.search_max_limit,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite:///:memory:"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = PageVaultConfig()
