"""Helpers that rules use to inspect the file system of an OCI image."""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

from whalewatch.container.image import ContainerImage, container_image_from_oci_tar
from whalewatch.container.layer import Layer


@dataclass
class FsUtils:
    oci: ContainerImage
    name: ClassVar[str] = "fs_util"

    def _layer(self, layer_index: int) -> Layer:
        if not 0 <= layer_index < len(self.oci.layers):
            raise IndexError(f"layer index {layer_index} out of range")
        return self.oci.layers[layer_index]

    def get_layer_count(self) -> int:
        return len(self.oci.layers)

    def dir_content_count(self, dir_path: str) -> int:
        """Count entries below ``dir_path`` in the topmost layer."""
        return len(self._layer(len(self.oci.layers) - 1).file_system.ls(dir_path))

    def ls_layer(self, dir_path: str, layer_index: int) -> list[str]:
        return self._layer(layer_index).file_system.ls(dir_path)

    def open_file_at_layer(self, file_path: str, layer_index: int) -> list[str]:
        """Return the lines of ``file_path`` as stored in the given layer."""
        data = self._layer(layer_index).file_system.open(file_path).read()
        return data.decode("utf-8", errors="replace").split("\n")

    def look_for_file(self, path: str) -> int:
        """Index of the topmost layer holding ``path``, or -1 if absent or deleted."""
        for index in range(len(self.oci.layers) - 1, -1, -1):
            found, deletion = self.oci.layers[index].file_system.has_file(path)
            if found:
                return -1 if deletion else index
        return -1

    def get_installed_packages(self) -> list[str]:
        return self.oci.get_package_list()


def setup(oci_tarpath: str) -> FsUtils:
    """Load the OCI tarball at ``oci_tarpath`` for inspection."""
    return FsUtils(container_image_from_oci_tar(oci_tarpath))