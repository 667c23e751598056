"""
Schema definition sources for tenantdb.

A source is a named chunk of SQL text holding CREATE TABLE statements and any
supporting DDL. Sources are loaded from files or from the default tenant
schema bundled with the package.
"""

import hashlib
import logging
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Iterable, List, Union

from ..exceptions import ConfigurationError


logger = logging.getLogger(__name__)

BUNDLED_PACKAGE = "tenantdb"


@dataclass(frozen=True)
class SchemaSource:
    """Named SQL text defining part of the tenant schema."""

    name: str
    sql: str

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "SchemaSource":
        path = Path(path)
        try:
            return cls(name=path.name, sql=path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ConfigurationError(f"Schema source not found: {path}")
        except OSError as e:
            raise ConfigurationError(f"Cannot read schema source {path}: {e}") from e


def _bundled_dir(*parts: str):
    resource = resources.files(BUNDLED_PACKAGE).joinpath("sql")
    for part in parts:
        resource = resource.joinpath(part)
    return resource


def load_bundled_sources() -> List[SchemaSource]:
    """Load the bundled tenant table definitions, ordered by file name."""
    directory = _bundled_dir("tables")
    entries = sorted(
        (entry for entry in directory.iterdir() if entry.name.endswith(".sql")),
        key=lambda entry: entry.name,
    )
    sources = [
        SchemaSource(name=entry.name, sql=entry.read_text(encoding="utf-8"))
        for entry in entries
    ]
    logger.debug(f"Loaded {len(sources)} bundled schema sources")
    return sources


def load_bundled_sql(name: str) -> str:
    """Read a bundled core SQL file such as ``functions.sql``."""
    resource = _bundled_dir("core", name)
    try:
        return resource.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigurationError(f"Bundled SQL file not found: core/{name}")


def load_sources(paths: Iterable[Union[str, Path]]) -> List[SchemaSource]:
    """Load sources from files and directories; an empty list means bundled."""
    paths = list(paths)
    if not paths:
        return load_bundled_sources()

    sources = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            for file in sorted(path.glob("*.sql")):
                sources.append(SchemaSource.from_path(file))
        else:
            sources.append(SchemaSource.from_path(path))

    if not sources:
        raise ConfigurationError(f"No schema sources found in {paths}")
    return sources


def load_sql_file(path: Union[str, Path, None], bundled_name: str) -> str:
    """Read an override SQL file, or the bundled core file when unset."""
    if path is None:
        return load_bundled_sql(bundled_name)
    return SchemaSource.from_path(path).sql


def sources_checksum(sources: Iterable[SchemaSource]) -> str:
    """SHA-256 over source names and contents, in order."""
    digest = hashlib.sha256()
    for source in sources:
        digest.update(source.name.encode("utf-8"))
        digest.update(b"\0")
        digest.update(source.sql.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()
