import gzip
import io
import os
import tarfile

import pytest

from whalewatch.container.layerfs import LayerFS, new_layer_fs
from whalewatch.container.tarutils import LoadedTar


def _tar_bytes(entries):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, content in entries:
            info = tarfile.TarInfo(name)
            if content is None:
                info.type = tarfile.DIRTYPE
                archive.addfile(info)
            else:
                info.size = len(content)
                archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


LAYER_ENTRIES = [
    ("app/test.txt", b"hello"),
    ("app/.wh.old.txt", b""),
    ("etc", None),
]


@pytest.fixture
def oci_tar(tmp_path):
    layer = _tar_bytes(LAYER_ENTRIES)
    outer = _tar_bytes(
        [
            ("blobs/sha256/gzlayer", gzip.compress(layer)),
            ("blobs/sha256/rawlayer", layer),
        ]
    )
    path = tmp_path / "image.tar"
    path.write_bytes(outer)
    return str(path)


@pytest.fixture
def gz_fs(oci_tar):
    return new_layer_fs(LoadedTar(oci_tar), "sha256:gzlayer", True)


def test_ls_lists_prefixed_entries(gz_fs):
    assert gz_fs.ls("/app") == ["/app/.wh.old.txt", "/app/test.txt"]
    assert gz_fs.ls("/etc") == ["/etc/"]


def test_ls_root_lists_everything(gz_fs):
    assert len(gz_fs.ls("/")) == len(LAYER_ENTRIES)


def test_str_reports_file_count(gz_fs):
    assert str(gz_fs) == f"FS with {len(LAYER_ENTRIES)} files!"


def test_open_reads_gzip_layer(gz_fs):
    assert gz_fs.open("/app/test.txt").read() == b"hello"


def test_open_reads_plain_layer(oci_tar):
    fs = new_layer_fs(LoadedTar(oci_tar), "sha256:rawlayer", False)
    assert fs.open("/app/test.txt").read() == b"hello"


def test_has_file(gz_fs):
    assert gz_fs.has_file("/app/test.txt") == (True, False)
    assert gz_fs.has_file("/app/old.txt") == (True, True)
    assert gz_fs.has_file("/missing") == (False, False)


def test_open_deleted_file_raises(gz_fs):
    with pytest.raises(FileNotFoundError):
        gz_fs.open("/app/old.txt")


def test_open_missing_file_raises(gz_fs):
    with pytest.raises(FileNotFoundError):
        gz_fs.open("/app/missing.txt")


def test_open_uses_cache_after_first_read(gz_fs, oci_tar):
    first = gz_fs.open("/app/test.txt").read()
    os.remove(oci_tar)
    assert gz_fs.open("/app/test.txt").read() == first


def test_missing_digest_gives_empty_fs(oci_tar):
    fs = new_layer_fs(LoadedTar(oci_tar), "sha256:missing", False)
    assert fs.ls("/") == []
    assert len(fs) == 0


def test_constructor_deduplicates_files():
    fs = LayerFS("unused.tar", "sha256:x", ["/b", "/a", "/b"])
    assert fs.ls("/") == ["/a", "/b"]