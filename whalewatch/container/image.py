"""Container images read from OCI layout tarballs."""

from __future__ import annotations

import json
import logging
import os
import shutil
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from whalewatch.base_image_cache import new_base_image_cache
from whalewatch.cache_db import NoRowFound
from whalewatch.config import get_config
from whalewatch.container.image_types import ImageMetadata, OCIImageIndex, OCIImageManifest
from whalewatch.container.layer import Layer, new_layer
from whalewatch.container.tarutils import LoadedTar, parse_json_bytes

logger = logging.getLogger(__name__)


@dataclass
class ContainerImage:
    index: OCIImageIndex
    metadata: ImageMetadata
    manifest: OCIImageManifest
    layers: list[Layer] = field(default_factory=list)
    oci_path: str = ""

    def __str__(self) -> str:
        lines = [f"{self.oci_path}\n"]
        lines.extend(f"{index}.\t{layer}\n" for index, layer in enumerate(self.layers))
        return "".join(lines)

    def get_base_image(self) -> str:
        """Return the cached base image whose layer digest matches the first layer, or ''."""
        if not get_config().base_image_cache.cache_location or not self.layers:
            return ""
        try:
            with new_base_image_cache() as cache:
                base_image = cache.get_image_by_digest(self.layers[0].digest)
        except (NoRowFound, sqlite3.Error) as exc:
            logger.warning("Error finding known base image: %s", exc)
            return ""
        logger.debug("Detected used base image %s", base_image)
        return base_image

    def extract_to_dir(self, base_path: str) -> None:
        """Extract every layer in order into the new directory ``base_path``."""
        try:
            os.mkdir(base_path, 0o755)
        except FileExistsError:
            raise FileExistsError("Directory already exists") from None
        for number, layer in enumerate(self.layers):
            logger.debug("Extracting layer %d of %d", number, len(self.layers))
            try:
                layer.extract_to_dir(base_path)
            except OSError:
                shutil.rmtree(base_path, ignore_errors=True)
                raise

    def get_package_list(self) -> list[str]:
        """Sorted, de-duplicated package estimates of all layers."""
        return sorted(
            {package for layer in self.layers for package in layer.get_installed_packages_estimate()}
        )


def _read_json(fetch: Callable[[str], bytes], key: str, what: str) -> Any:
    try:
        return parse_json_bytes(fetch(key))
    except LookupError as exc:
        logger.error("Failed to get %s: %s", what, exc)
        raise
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.error("Failed to parse %s: %s", what, exc)
        raise


def container_image_from_oci_tar(oci_path: str) -> ContainerImage:
    """Read index, manifest, config and layers from an OCI layout tarball."""
    with LoadedTar(oci_path) as loaded_tar:
        index = OCIImageIndex.from_dict(
            _read_json(loaded_tar.get_blob_from_file_by_name, "index.json", "image index")
        )
        if not index.manifests:
            raise ValueError("Image index lists no manifests")
        manifest = OCIImageManifest.from_dict(
            _read_json(
                loaded_tar.get_blob_from_file_by_digest, index.manifests[0].digest, "image manifest"
            )
        )
        metadata = ImageMetadata.from_dict(
            _read_json(
                loaded_tar.get_blob_from_file_by_digest, manifest.config.digest, "image config"
            )
        )

        non_empty = [entry.created_by for entry in metadata.history if not entry.empty_layer]
        commands = non_empty[: len(manifest.layers)]
        commands += [""] * (len(manifest.layers) - len(commands))
        layers = [
            new_layer(loaded_tar, meta.digest, command, meta.media_type.endswith("+gzip"))
            for meta, command in zip(manifest.layers, commands)
        ]

    if len(layers) != len(non_empty):
        logger.warning(
            "The amount of detected layers (%d) and non empty history entries (%d) differ! "
            "This could throw off layer <-> Dockerfile Instruction bridge.",
            len(layers),
            len(non_empty),
        )
    return ContainerImage(
        index=index, metadata=metadata, manifest=manifest, layers=layers, oci_path=oci_path
    )