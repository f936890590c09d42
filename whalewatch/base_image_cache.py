"""Lookups against the local cache of known base images."""

from __future__ import annotations

import os
import sqlite3
from collections.abc import Sequence

from whalewatch import cache_db
from whalewatch.cache_db import BaseImagePackageEntry, NoRowFound
from whalewatch.config import get_config

DB_FILE_NAME = "base_image_cache.db"


class BaseImageCache:
    """Answers which cached base image matches a digest or a package list."""

    def __init__(self, cache_dir: str, conn: sqlite3.Connection) -> None:
        self.cache_dir = cache_dir
        self.conn = conn

    def __enter__(self) -> BaseImageCache:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    def query_image(self, image: str) -> BaseImagePackageEntry:
        return cache_db.query_elem_by_properties(self.conn, BaseImagePackageEntry(image=image))

    def get_image_by_digest(self, digest: str) -> str:
        """Return the first image known to contain the layer ``digest``."""
        images = cache_db.query_image_by_digest(self.conn, digest)
        if not images:
            raise NoRowFound("No image found with that digest")
        return images[0]

    def get_closest_dependency_image(self, packages: Sequence[str]) -> str:
        """Return the image ranked first for the given package list."""
        hits = cache_db.get_sorted_by_packages(self.conn, packages, [])
        if not hits:
            raise NoRowFound("No image found")
        return hits[0].image

    def get_closest_dependency_image_with_base(self, base: str, packages: Sequence[str]) -> None:
        return None


def new_base_image_cache() -> BaseImageCache:
    """Open the cache database in the configured cache location."""
    cache_location = get_config().base_image_cache.cache_location
    conn = cache_db.load_or_init_db(os.path.join(cache_location, DB_FILE_NAME))
    return BaseImageCache(cache_location, conn)