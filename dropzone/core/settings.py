"""Unified settings for dropzone."""

import importlib.metadata
import ipaddress
import tomllib
from pathlib import Path
from typing import ClassVar, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MiB = 1024 * 1024


def read_pyproject(pyproject_path: Path) -> dict:
    """Read pyproject.toml into a dict."""
    with pyproject_path.open("rb") as file_handle:
        return tomllib.load(file_handle)


def _git_tag_version(base_dir: Path) -> str | None:
    try:
        import git
    except ImportError:
        # GitPython refuses to import without a git executable
        return None
    try:
        repo = git.Repo(base_dir, search_parent_directories=True)
    except git.exc.GitError:
        return None
    latest_tag = max(repo.tags, key=lambda t: t.commit.committed_datetime, default=None)
    return str(latest_tag) if latest_tag else "0.0.0"


def get_version(base_dir: Path) -> str:
    """Get version from git tags or fallback to package metadata."""
    if version := _git_tag_version(base_dir):
        return version
    try:
        return importlib.metadata.version("dropzone")
    except importlib.metadata.PackageNotFoundError:
        return "0.0.0"


class Settings(BaseSettings):
    """Unified settings for the dropzone upload service."""

    DEBUG: bool = True
    ENVIRONMENT: Literal["DEV", "PROD"] = "DEV"

    # ClassVar to prevent Pydantic from trying to load from env
    BASE_DIR: ClassVar[Path] = Path(__file__).parent.parent.parent
    PROJECT: ClassVar[dict] = read_pyproject(BASE_DIR / "pyproject.toml")
    API_NAME: ClassVar[str] = PROJECT.get("project", {}).get("name", "dropzone")
    API_DESCRIPTION: ClassVar[str] = PROJECT.get("project", {}).get("description", "File upload server")
    API_VERSION: ClassVar[str] = get_version(BASE_DIR)

    # Server
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 3000

    # Storage
    STORAGE_ROOT: Path = Path("./uploads")

    # Ingestion limits
    MAX_REQUEST_BYTES: int = Field(default=1024 * MiB, gt=0)
    MAX_PART_BYTES: int = Field(default=512 * MiB, gt=0)
    MAX_HEADER_BYTES: int = Field(default=16 * 1024, gt=0)
    MAX_FILENAME_LENGTH: int = Field(default=200, ge=8, le=240)
    CHUNK_SIZE: int = Field(default=64 * 1024, gt=0)
    COLLISION_RETRIES: int = Field(default=100, ge=0)
    REQUEST_TIMEOUT_SECONDS: float = Field(default=300.0, gt=0)

    @field_validator("API_HOST")
    @classmethod
    def _literal_host(cls, value: str) -> str:
        # Robyn binds the socket to a literal address and rejects host names
        ipaddress.ip_address(value)
        return value

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


settings = Settings()  # type: ignore
