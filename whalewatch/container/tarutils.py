"""Reading entries and blobs out of tar archives and OCI layouts."""

from __future__ import annotations

import gzip
import io
import json
import logging
import tarfile
from collections.abc import Callable, Iterator
from typing import Any, BinaryIO

logger = logging.getLogger(__name__)


class ValueNotFound(LookupError):
    """Raised when no tar entry matches the requested name or digest."""

    def __init__(self, digest: str, tar_path: str = "in place") -> None:
        self.digest = digest
        self.tar_path = tar_path
        super().__init__(f"Digest {digest} not found in tarfile {tar_path}")


def _entry_name(member: tarfile.TarInfo) -> str:
    # Directory entries keep their trailing slash, as stored in the archive.
    if member.isdir() and not member.name.endswith("/"):
        return member.name + "/"
    return member.name


def _read_member(archive: tarfile.TarFile, member: tarfile.TarInfo) -> bytes:
    if not member.isreg():
        return b""
    extracted = archive.extractfile(member)
    return extracted.read() if extracted is not None else b""


def _iter_members(fileobj: BinaryIO) -> Iterator[tuple[str, tarfile.TarFile, tarfile.TarInfo]]:
    start = fileobj.tell()
    if not fileobj.read(1):
        return
    fileobj.seek(start)
    with tarfile.open(fileobj=fileobj, mode="r:") as archive:
        for member in archive:
            yield _entry_name(member), archive, member


def _find_blob(fileobj: BinaryIO, search_value: str, transform: Callable[[str], str]) -> bytes:
    for name, archive, member in _iter_members(fileobj):
        if transform(name) == search_value:
            return _read_member(archive, member)
    raise ValueNotFound(search_value)


def _identity(name: str) -> str:
    return name


def name_to_blob_digest(path: str) -> str:
    """Turn an OCI blob path such as ``blobs/sha256/abc`` into ``sha256:abc``."""
    return path.removeprefix("blobs/").replace("/", ":")


class LoadedTar:
    """A tar file read fully into memory on first access."""

    def __init__(self, tar_path: str) -> None:
        self.tar_path = tar_path
        self._data: dict[str, bytes] = {}
        self._keys: list[str] = []
        self._loaded = False

    def __enter__(self) -> LoadedTar:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unload()

    def _load(self) -> None:
        if self._loaded:
            return
        with open(self.tar_path, "rb") as handle:
            for name, archive, member in _iter_members(handle):
                self._data[name] = _read_member(archive, member)
                self._keys.append(name)
        self._loaded = True

    def unload(self) -> None:
        """Drop the entries held in memory."""
        self._data = {}
        self._keys = []

    def get_available(self) -> list[str]:
        """Return entry names in archive order."""
        self._load()
        return list(self._keys)

    def _get_blob_by_pattern(self, search_value: str, transform: Callable[[str], str]) -> bytes:
        self._load()
        for key in self._keys:
            if transform(key) == search_value:
                return self._data[key]
        raise ValueNotFound(search_value)

    def get_blob_from_file_by_name(self, search_value: str) -> bytes:
        return self._get_blob_by_pattern(search_value, _identity)

    def get_blob_from_file_by_digest(self, digest: str) -> bytes:
        return self._get_blob_by_pattern(digest, name_to_blob_digest)


def get_available_in_tar_data(data: bytes) -> list[str]:
    """List entry names of an in-memory tar archive."""
    return [name for name, _, _ in _iter_members(io.BytesIO(data))]


def get_blob_from_path_by_digest(path: str, digest: str) -> bytes:
    with open(path, "rb") as handle:
        return _find_blob(handle, digest, name_to_blob_digest)


def get_blob_from_data_by_digest(data: bytes, digest: str) -> bytes:
    return _find_blob(io.BytesIO(data), digest, name_to_blob_digest)


def get_blob_from_data_by_name(data: bytes, name: str) -> bytes:
    return _find_blob(io.BytesIO(data), name, _identity)


def ungzip_blob(raw: bytes) -> bytes:
    """Decompress gzip data."""
    try:
        return gzip.decompress(raw)
    except (OSError, EOFError):
        logger.error("Failed to ungzip data")
        raise


def parse_json_bytes(data: bytes) -> Any:
    return json.loads(data)