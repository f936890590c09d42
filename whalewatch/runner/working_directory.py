"""A shared, reference-counted scratch directory in which rule checks run."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_instance: RunnerWorkingDirectory | None = None


class RunnerWorkingDirectory:
    """Temporary directory shared by all runners; removed when the last reference is freed."""

    def __init__(self, tmp_dir_path: str) -> None:
        self.tmp_dir_path = tmp_dir_path
        self.ref_count = 0
        self.is_populated = False

    def __enter__(self) -> RunnerWorkingDirectory:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.free()

    def get_absolute_path(self, path: str) -> str:
        """Return ``path`` resolved inside the working directory."""
        return os.path.normpath(os.path.join(self.tmp_dir_path, path))

    def free(self) -> None:
        """Drop one reference; the directory is deleted when none are left."""
        global _instance
        self.ref_count -= 1
        if self.ref_count > 0:
            logger.debug("Free was called for working directory but ref count has not hit 0")
            return
        try:
            shutil.rmtree(self.tmp_dir_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning(
                "Failed to cleanup working directory for runner at %s: %s", self.tmp_dir_path, exc
            )
            return
        logger.debug("Working directory cleaned up (ref count was 0)")
        with _lock:
            if _instance is self:
                _instance = None

    def populate(self, dockerfile_path: str, oci_image_path: str, docker_image_path: str) -> None:
        """Hard-link the Dockerfile and both image tarballs into the directory once."""
        if self.is_populated:
            return
        links = (
            (dockerfile_path, "Dockerfile"),
            (oci_image_path, "out.tar"),
            (docker_image_path, "out_docker.tar"),
        )
        for source, new_name in links:
            destination = os.path.join(self.tmp_dir_path, new_name)
            logger.debug("Linking %s", destination)
            try:
                os.link(source, destination)
            except OSError as exc:
                logger.warning(
                    "Could not add %s to working directory %s: %s", source, self.tmp_dir_path, exc
                )
                return
        self.is_populated = True


def get_referencing_working_directory_instance() -> RunnerWorkingDirectory:
    """Return the shared working directory, creating it if needed, and take a reference."""
    global _instance
    with _lock:
        if _instance is None:
            try:
                path = tempfile.mkdtemp(prefix="embedded")
            except OSError as exc:
                logger.error(
                    "Could not instantiate tmp directory for python runner environment: %s", exc
                )
                raise
            logger.debug("Working directory created at %s", path)
            _instance = RunnerWorkingDirectory(path)
        _instance.ref_count += 1
        return _instance