"""
Migration catalog sources.

A source yields (filename, content) pairs; MigrationStore does the
parsing. Sources never execute anything. Reading is a coroutine so a
remote fetch never blocks the event loop.

- DirectorySource: migration files in a directory on disk
- PackageSource: files bundled inside an installed Python package
- MappingSource: an in-memory {filename: content} bundle
- HttpSource: a remote JSON bundle fetched over HTTP
"""

import logging
from abc import ABC, abstractmethod
from importlib import resources
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import httpx

from schemaledger.errors import CatalogError

logger = logging.getLogger(__name__)


class MigrationSource(ABC):
    """Abstract provider of migration files."""

    @abstractmethod
    async def read_files(self) -> List[Tuple[str, str]]:
        """
        Return (filename, content) pairs.

        Order is not significant; the store sorts units by identifier.
        """

    @abstractmethod
    def describe(self) -> str:
        """Short human-readable location used in log messages."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}({self.describe()})>"


class DirectorySource(MigrationSource):
    """
    Migration files in a single directory (not recursive).

    Example:
        >>> source = DirectorySource(Path('db/migrations'))
        >>> await source.read_files()
        [('001__create_users.up.sql', 'CREATE TABLE users ...'), ...]
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    async def read_files(self) -> List[Tuple[str, str]]:
        if not self.path.exists():
            logger.warning("Migrations directory does not exist: %s", self.path)
            return []

        if not self.path.is_dir():
            raise CatalogError(f"Migrations path is not a directory: {self.path}")

        return [
            (file_path.name, file_path.read_text(encoding='utf-8'))
            for file_path in sorted(self.path.iterdir())
            if file_path.is_file()
        ]

    def describe(self) -> str:
        return str(self.path)


class PackageSource(MigrationSource):
    """
    Migration files embedded in an installed package.

    Args:
        package: Importable package name (e.g., 'myapp')
        subdir: Directory inside the package (default 'migrations')
    """

    def __init__(self, package: str, subdir: str = 'migrations'):
        self.package = package
        self.subdir = subdir

    async def read_files(self) -> List[Tuple[str, str]]:
        root = resources.files(self.package)
        for part in self.subdir.split('/'):
            if part:
                root = root.joinpath(part)

        if not root.is_dir():
            logger.warning("No bundled migrations at %s", self.describe())
            return []

        return [
            (entry.name, entry.read_text(encoding='utf-8'))
            for entry in sorted(root.iterdir(), key=lambda e: e.name)
            if entry.is_file()
        ]

    def describe(self) -> str:
        return f"{self.package}:{self.subdir}"


class MappingSource(MigrationSource):
    """In-memory bundle of {filename: content}."""

    def __init__(self, files: Mapping[str, str], name: str = 'bundle'):
        self.files: Dict[str, str] = dict(files)
        self.name = name

    async def read_files(self) -> List[Tuple[str, str]]:
        return sorted(self.files.items())

    def describe(self) -> str:
        return self.name


class HttpSource(MigrationSource):
    """
    Remote migration bundle.

    The endpoint must return JSON of the form
    {"files": {"001__create_users.up.sql": "CREATE TABLE ...", ...}}.

    Args:
        url: Bundle URL
        client: Optional httpx.AsyncClient (tests pass one with a
            MockTransport); the caller owns and closes it
        timeout: Request timeout in seconds
    """

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0):
        self.url = url
        self.client = client
        self.timeout = timeout

    async def read_files(self) -> List[Tuple[str, str]]:
        try:
            if self.client is not None:
                response = await self.client.get(self.url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.url)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise CatalogError(
                f"Failed to fetch migration bundle from {self.url}: {e}"
            ) from e
        except ValueError as e:
            raise CatalogError(
                f"Migration bundle at {self.url} is not valid JSON: {e}"
            ) from e

        files = payload.get('files') if isinstance(payload, dict) else None
        if not isinstance(files, dict):
            raise CatalogError(
                f"Migration bundle at {self.url} has no 'files' object"
            )

        logger.debug("Fetched %d migration files from %s", len(files), self.url)
        return sorted((str(name), str(content)) for name, content in files.items())

    def describe(self) -> str:
        return self.url


def as_source(source) -> MigrationSource:
    """Accept a MigrationSource or a filesystem path."""
    if isinstance(source, MigrationSource):
        return source
    if isinstance(source, (str, Path)):
        return DirectorySource(Path(source))
    raise TypeError(f"Unsupported migration source: {source!r}")
