"""One layer of a container image and what can be derived from it."""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
from dataclasses import dataclass

from whalewatch.container.layerfs import LayerFS, new_layer_fs
from whalewatch.container.tarutils import LoadedTar

logger = logging.getLogger(__name__)

_PACKAGE_MANAGERS = ("apt", "apt-get", "brew", "apk")
_STRIP_ORDER = ("apt-get", "apt", "apk", "brew", "install")
_WHITEOUT_MARK = ".wh."


def _clean_from_params_and_flags(values: list[str]) -> list[str]:
    return [value for value in values if not value.startswith("-")]


def _remove_all(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path, ignore_errors=True)
        return
    try:
        os.remove(path)
    except OSError:
        pass


@dataclass
class Layer:
    digest: str
    command: str
    tar_path: str
    file_system: LayerFS

    def __str__(self) -> str:
        return f"[{self.digest}]({self.tar_path}) {self.file_system}"

    def get_installed_packages_estimate(self) -> list[str]:
        """Guess installed packages from apt/apt-get, brew and apk calls in the command."""
        packages: list[str] = []
        for cmd in self.command.split("&&"):
            cmd = cmd.removeprefix(" ").removesuffix(" ")
            for segment in cmd.split(";"):
                segment = segment.strip()
                if not segment.startswith(_PACKAGE_MANAGERS):
                    continue
                for prefix in _STRIP_ORDER:
                    segment = segment.removeprefix(prefix)
                segment = segment.strip()
                packages.extend(part.strip() for part in segment.split(" "))
        return _clean_from_params_and_flags(packages)

    def extract_to_dir(self, dir_path: str) -> None:
        """Write this layer's files below ``dir_path``, applying its whiteouts."""
        for file in self.file_system.ls("/"):
            # Entries ending in a slash are taken to be directories.
            if file.endswith("/"):
                continue
            local_path = os.path.normpath(os.path.join(dir_path, "." + file))
            if _WHITEOUT_MARK in local_path:
                filename = os.path.basename(local_path)
                deleted = os.path.join(
                    local_path.removesuffix(filename), filename.removeprefix(_WHITEOUT_MARK)
                )
                _remove_all(deleted)
                continue
            try:
                os.makedirs(os.path.dirname(local_path), mode=0o755, exist_ok=True)
            except OSError as exc:
                raise OSError(f"Error occured for dir creation for file {file}: {exc}") from exc
            try:
                data = self.file_system.open(file).read()
                with open(local_path, "wb") as handle:
                    handle.write(data)
            except (OSError, LookupError, EOFError, tarfile.TarError) as exc:
                raise OSError(f"Error occured for file {file}: {exc}") from exc


def new_layer(loaded_tar: LoadedTar, digest: str, command: str, is_gzip: bool) -> Layer:
    """Create a layer for blob ``digest`` of ``loaded_tar``."""
    return Layer(
        digest=digest,
        command=command,
        tar_path=loaded_tar.tar_path,
        file_system=new_layer_fs(loaded_tar, digest, is_gzip),
    )