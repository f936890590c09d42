"""SQLite storage mapping base images to their packages and layer digests."""

from __future__ import annotations

import logging
import os
import sqlite3
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_INIT_STATEMENT = """
CREATE TABLE IF NOT EXISTS image_package_lookup(image TEXT NOT NULL, package TEXT NOT NULL, version TEXT, base TEXT);
CREATE TABLE IF NOT EXISTS image_digest_lookup(image TEXT NOT NULL, digest TEXT NOT NULL);
"""
_INSERT_IMAGE_PACKAGE = (
    "INSERT INTO image_package_lookup(image, package, version, base) VALUES (?, ?, ?, ?)"
)
_INSERT_DIGEST = "INSERT INTO image_digest_lookup(image, digest) VALUES (?, ?)"
_SELECT_ENTRIES = "SELECT image, package, version, base FROM image_package_lookup"


class NoRowFound(LookupError):
    """Raised when a lookup matches no row."""


@dataclass
class BaseImagePackageEntry:
    image: str = ""
    base: str = ""
    package: str = ""
    package_version: str = ""


@dataclass
class HitInfo:
    image: str
    matched_packages: int = 0
    total_packages: int = 0

    def calc_score(self) -> int:
        return self.matched_packages * (self.matched_packages // self.total_packages)


def _row_to_entry(row: Sequence[object]) -> BaseImagePackageEntry:
    image, package, version, base = row
    return BaseImagePackageEntry(
        image=str(image),
        package=str(package),
        package_version="" if version is None else str(version),
        base="" if base is None else str(base),
    )


def _fetch_entries(
    conn: sqlite3.Connection, query: str, params: Iterable[object] = ()
) -> list[BaseImagePackageEntry]:
    return [_row_to_entry(row) for row in conn.execute(query, tuple(params)).fetchall()]


def load_or_init_db(db_path: str) -> sqlite3.Connection:
    """Open the cache database, creating its tables when the file is new."""
    needs_init = db_path == ":memory:" or not os.path.exists(db_path)
    if needs_init:
        logger.info("Cache did not exist, creating cache...")
    conn = sqlite3.connect(db_path)
    if needs_init:
        try:
            conn.executescript(_INIT_STATEMENT)
        except sqlite3.Error as exc:
            logger.error("Could not init DB: %s", exc)
    return conn


def exec_statement(conn: sqlite3.Connection, statement: str) -> None:
    """Run one statement in its own transaction, rolling back on failure."""
    with conn:
        conn.execute(statement)


def query_elem_by_properties(
    conn: sqlite3.Connection, partial: BaseImagePackageEntry
) -> BaseImagePackageEntry:
    """Return the first package row matching every non-empty field of ``partial``."""
    candidates = (
        ("base", partial.base),
        ("image", partial.image),
        ("package", partial.package),
        ("version", partial.package_version),
    )
    conditions = [(column, value) for column, value in candidates if value]
    if not conditions:
        raise ValueError("At least one property must be set for a lookup")
    where = " AND ".join(f"{column} = ?" for column, _ in conditions)
    entries = _fetch_entries(
        conn, f"{_SELECT_ENTRIES} WHERE {where}", (value for _, value in conditions)
    )
    if not entries:
        raise NoRowFound("No row found")
    return entries[0]


def get_sorted_by_packages(
    conn: sqlite3.Connection, packages: Sequence[str], versions: Sequence[str]
) -> list[HitInfo]:
    """Count, per image, how many of ``packages`` it contains, ordered by score."""
    packages = list(packages)
    versions = list(versions)
    if versions and len(versions) != len(packages):
        raise ValueError("Amount of versions must either match amount of packages or be 0")
    if versions:
        logger.warning("Not implemented!")
        return []
    placeholders = ",".join("?" for _ in packages)
    try:
        entries = _fetch_entries(
            conn, f"{_SELECT_ENTRIES} WHERE package IN ({placeholders})", packages
        )
    except sqlite3.Error as exc:
        logger.warning("Package lookup failed: %s", exc)
        return []
    counter = Counter(entry.image for entry in entries)
    hits = [HitInfo(image, matched, len(packages)) for image, matched in counter.items()]
    hits.sort(key=HitInfo.calc_score)
    return hits


def add_image_package(conn: sqlite3.Connection, image: str, pkg: str, version: str) -> None:
    with conn:
        conn.execute(_INSERT_IMAGE_PACKAGE, (image, pkg, version, ""))


def add_image_digest(conn: sqlite3.Connection, image: str, digest: str) -> None:
    """Record a layer digest for an image; empty values are ignored."""
    if not image or not digest:
        return
    with conn:
        conn.execute(_INSERT_DIGEST, (image, digest))


def do_query(conn: sqlite3.Connection, query: str) -> list[BaseImagePackageEntry]:
    """Run a query over image_package_lookup and return its rows as entries."""
    return _fetch_entries(conn, query)


def query_image_by_digest(conn: sqlite3.Connection, digest: str) -> list[str]:
    rows = conn.execute(
        "SELECT image FROM image_digest_lookup WHERE digest = ?", (digest,)
    ).fetchall()
    return [str(image) for (image,) in rows]