"""Read-only view of the files in one image layer, loaded on demand."""

from __future__ import annotations

import io
import logging
import tarfile
from bisect import bisect_left
from collections.abc import Iterable
from itertools import takewhile

from whalewatch.container import tarutils
from whalewatch.container.cache import LRUCache
from whalewatch.container.tarutils import LoadedTar

logger = logging.getLogger(__name__)

_FILE_CACHE_SIZE = 5
_WHITEOUT_PREFIX = ".wh."


def _base_name(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


class LayerFS:
    """Files of a layer blob; contents are read from the tar only when opened."""

    def __init__(
        self,
        tar_path: str,
        digest: str,
        files: Iterable[str],
        is_gzip: bool = False,
        cache_size: int = _FILE_CACHE_SIZE,
    ) -> None:
        self.tar_path = tar_path
        self.digest = digest
        self.is_gzip = is_gzip
        self._files = sorted(set(files))
        self._lookup = frozenset(self._files)
        self._file_cache: LRUCache[bytes] = LRUCache(cache_size)

    def __len__(self) -> int:
        return len(self._files)

    def __str__(self) -> str:
        return f"FS with {len(self._files)} files!"

    def _deletes_file(self, file_path: str) -> bool:
        filename = _base_name(file_path)
        whiteout = f"{file_path.removesuffix(filename)}{_WHITEOUT_PREFIX}{filename}"
        return whiteout in self._lookup

    def open(self, name: str) -> io.BytesIO:
        """Return the contents of ``name`` as a binary file object."""
        if self._deletes_file(name):
            raise FileNotFoundError(f"Layer deletes file: {name}")
        if name not in self._lookup:
            raise FileNotFoundError(f"File not found: {name}")
        cached = self._file_cache.get(name)
        if cached is not None:
            return io.BytesIO(cached)
        data = tarutils.get_blob_from_path_by_digest(self.tar_path, self.digest)
        if self.is_gzip:
            data = tarutils.ungzip_blob(data)
        file_data = tarutils.get_blob_from_data_by_name(data, name.removeprefix("/"))
        self._file_cache.put(name, file_data)
        return io.BytesIO(file_data)

    def has_file(self, file_path: str) -> tuple[bool, bool]:
        """Return (has an entry, entry is a deletion) for ``file_path``."""
        if self._deletes_file(file_path):
            return True, True
        if file_path in self._lookup:
            return True, False
        return False, False

    def ls(self, path: str) -> list[str]:
        """List every entry whose absolute path starts with ``path``, sorted."""
        start = bisect_left(self._files, path)
        return list(takewhile(lambda entry: entry.startswith(path), self._files[start:]))


def _get_all_files(loaded_tar: LoadedTar, digest: str, is_gzip: bool) -> list[str]:
    data = loaded_tar.get_blob_from_file_by_digest(digest)
    if is_gzip:
        data = tarutils.ungzip_blob(data)
    # Archive entries carry no leading slash.
    return ["/" + name for name in tarutils.get_available_in_tar_data(data)]


def new_layer_fs(loaded_tar: LoadedTar, digest: str, is_gzip: bool) -> LayerFS:
    """Index the files of the layer blob ``digest`` inside ``loaded_tar``."""
    logger.debug("Indexing layer %s", digest)
    try:
        files = _get_all_files(loaded_tar, digest, is_gzip)
    except (tarutils.ValueNotFound, OSError, EOFError, tarfile.TarError) as exc:
        logger.warning("Could not list files of layer %s: %s", digest, exc)
        files = []
    return LayerFS(loaded_tar.tar_path, digest, files, is_gzip)