import gzip
import hashlib
import io
import json
import os
import tarfile

import pytest

from whalewatch import cache_db
from whalewatch.config import load_config_from_data, reset_config
from whalewatch.container.image import container_image_from_oci_tar
from whalewatch.container.tarutils import ValueNotFound


def _layer_tar(entries):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as archive:
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            if data is None:
                info.type = tarfile.DIRTYPE
                archive.addfile(info)
            else:
                info.size = len(data)
                archive.addfile(info, io.BytesIO(data))
    return gzip.compress(buf.getvalue())


def _build_oci(path, layers, history, include_index=True):
    blobs = {}

    def add(data):
        hexdigest = hashlib.sha256(data).hexdigest()
        blobs[f"blobs/sha256/{hexdigest}"] = data
        return f"sha256:{hexdigest}"

    layer_descs = []
    for entries in layers:
        data = _layer_tar(entries)
        layer_descs.append(
            {
                "digest": add(data),
                "mediaType": "application/vnd.oci.image.layer.v1.tar+gzip",
                "size": len(data),
            }
        )
    config = {"architecture": "amd64", "os": "linux", "history": history}
    config_data = json.dumps(config).encode()
    manifest = {
        "schemaVersion": 2,
        "config": {"digest": add(config_data), "mediaType": "config", "size": len(config_data)},
        "layers": layer_descs,
    }
    manifest_data = json.dumps(manifest).encode()
    index = {"schemaVersion": 2, "manifests": [{"digest": add(manifest_data), "size": 1}]}
    if include_index:
        blobs["index.json"] = json.dumps(index).encode()
    with tarfile.open(path, mode="w") as archive:
        for name, data in blobs.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return [desc["digest"] for desc in layer_descs]


HISTORY = [
    {"created_by": "apt-get install -y curl"},
    {"created_by": "ENV A=1", "empty_layer": True},
    {"created_by": "apk add bash && apt install git"},
]
LAYERS = [
    {"app/": None, "app/a.txt": b"first", "app/keep.txt": b"keep"},
    {"app/": None, "app/.wh.a.txt": b"", "app/b.txt": b"second"},
]


@pytest.fixture
def oci(tmp_path):
    path = str(tmp_path / "out.tar")
    digests = _build_oci(path, LAYERS, HISTORY)
    return path, digests


@pytest.fixture
def fresh_config(monkeypatch):
    for name in list(os.environ):
        if name.startswith("WHALE_WATCHER_"):
            monkeypatch.delenv(name)
    reset_config()
    yield
    reset_config()


def test_layers_and_commands(oci):
    path, digests = oci
    image = container_image_from_oci_tar(path)
    assert image.oci_path == path
    assert [layer.digest for layer in image.layers] == digests
    assert [layer.command for layer in image.layers] == [
        "apt-get install -y curl",
        "apk add bash && apt install git",
    ]
    assert len(image.metadata.history) == len(HISTORY)


def test_package_list_sorted_unique(oci):
    image = container_image_from_oci_tar(oci[0])
    packages = image.get_package_list()
    assert {"curl", "bash", "git"} <= set(packages)
    assert packages == sorted(set(packages))


def test_str_lists_layers(oci):
    path, digests = oci
    text = str(container_image_from_oci_tar(path))
    assert text.startswith(f"{path}\n")
    assert f"0.\t[{digests[0]}]" in text
    assert f"1.\t[{digests[1]}]" in text


def test_extract_to_dir_applies_layers(oci, tmp_path):
    image = container_image_from_oci_tar(oci[0])
    out = tmp_path / "extract"
    image.extract_to_dir(str(out))
    assert not (out / "app" / "a.txt").exists()
    assert (out / "app" / "keep.txt").read_bytes() == b"keep"
    assert (out / "app" / "b.txt").read_bytes() == b"second"


def test_extract_to_existing_dir_fails(oci, tmp_path):
    image = container_image_from_oci_tar(oci[0])
    with pytest.raises(FileExistsError):
        image.extract_to_dir(str(tmp_path))


def test_missing_index_raises(tmp_path):
    path = str(tmp_path / "broken.tar")
    _build_oci(path, LAYERS, HISTORY, include_index=False)
    with pytest.raises(ValueNotFound):
        container_image_from_oci_tar(path)


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        container_image_from_oci_tar(str(tmp_path / "absent.tar"))


def test_base_image_without_cache_location(oci, fresh_config):
    load_config_from_data(b"target_list: fs\n")
    assert container_image_from_oci_tar(oci[0]).get_base_image() == ""


def test_base_image_from_cache(oci, tmp_path, fresh_config):
    path, digests = oci
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()
    conn = cache_db.load_or_init_db(str(cache_dir / "base_image_cache.db"))
    cache_db.add_image_digest(conn, "debian:bookworm", digests[0])
    conn.close()
    load_config_from_data(f"base_image_cache:\n  cache_location: {json.dumps(str(cache_dir))}\n")
    assert container_image_from_oci_tar(path).get_base_image() == "debian:bookworm"


def test_base_image_unknown_digest(oci, tmp_path, fresh_config):
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()
    load_config_from_data(f"base_image_cache:\n  cache_location: {json.dumps(str(cache_dir))}\n")
    assert container_image_from_oci_tar(oci[0]).get_base_image() == ""