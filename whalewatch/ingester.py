"""Adding base images to the local base image cache."""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import closing

import requests

from whalewatch.base_image_cache import DB_FILE_NAME
from whalewatch.cache_db import (
    BaseImagePackageEntry,
    NoRowFound,
    add_image_digest,
    add_image_package,
    load_or_init_db,
    query_elem_by_properties,
)
from whalewatch.config import get_config
from whalewatch.container.image import container_image_from_oci_tar
from whalewatch.fetcher import FetchError, load_tar_to_path
from whalewatch.runner.working_directory import get_referencing_working_directory_instance

logger = logging.getLogger(__name__)


def _packages_and_digests(oci_path: str) -> tuple[list[str], list[str]]:
    """Package estimates and layer digests of every layer above the first one."""
    image = container_image_from_oci_tar(oci_path)
    logger.debug("Building package and digest list")
    packages: dict[str, None] = {}
    digests: list[str] = []
    for layer in image.layers[1:]:
        digests.append(layer.digest)
        packages.update(dict.fromkeys(layer.get_installed_packages_estimate()))
    return list(packages), digests


def ingest_image(image: str) -> bool:
    """Download ``image`` and record its packages and layer digests in the cache.

    Returns False when the image was already cached, True once it has been added.
    """
    logger.info("Inserting image %s into base image cache", image)
    cache_location = get_config().base_image_cache.cache_location
    with closing(load_or_init_db(os.path.join(cache_location, DB_FILE_NAME))) as conn:
        try:
            existing = query_elem_by_properties(conn, BaseImagePackageEntry(image=image))
        except NoRowFound:
            existing = None
        if existing is not None and existing.package:
            logger.info("Image %s already present", image)
            return False

        with get_referencing_working_directory_instance() as working_directory:
            destination = working_directory.get_absolute_path("image.tar")
            try:
                load_tar_to_path(image, destination, "oci")
            except (FetchError, OSError, ValueError, requests.RequestException) as exc:
                logger.error("Could not download image %s: %s", image, exc)
                raise
            packages, digests = _packages_and_digests(destination)

        for package in packages:
            try:
                add_image_package(conn, image, package, "")
            except sqlite3.Error as exc:
                logger.error("Could not add package %s to db: %s", package, exc)
        logger.debug("Packages inserted: %d", len(packages))
        for digest in digests:
            try:
                add_image_digest(conn, image, digest)
            except sqlite3.Error as exc:
                logger.error("Could not add digest %s to db: %s", digest, exc)
        logger.debug("Digests inserted: %d", len(digests))
    return True