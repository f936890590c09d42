import gzip
import hashlib
import io
import tarfile

import pytest

from whalewatch.container.layer import Layer, new_layer
from whalewatch.container.layerfs import LayerFS
from whalewatch.container.tarutils import LoadedTar


def _layer_with_command(command):
    return Layer(digest="sha256:x", command=command, tar_path="", file_system=LayerFS("", "", []))


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


def _write_blob_tar(path, blob):
    hexdigest = hashlib.sha256(blob).hexdigest()
    with tarfile.open(path, mode="w") as archive:
        info = tarfile.TarInfo(f"blobs/sha256/{hexdigest}")
        info.size = len(blob)
        archive.addfile(info, io.BytesIO(blob))
    return f"sha256:{hexdigest}"


@pytest.fixture
def built_layer(tmp_path):
    blob = _layer_tar(
        {
            "app/": None,
            "app/hello.txt": b"hello",
            "app/.wh.old.txt": b"",
            "etc/": None,
            "etc/conf": b"x=1",
        }
    )
    tar_path = str(tmp_path / "image.tar")
    digest = _write_blob_tar(tar_path, blob)
    return new_layer(LoadedTar(tar_path), digest, "apt install vim", True), digest, tar_path


def test_packages_from_apt_get():
    layer = _layer_with_command("apt-get install -y curl git")
    assert layer.get_installed_packages_estimate() == ["install", "curl", "git"]


def test_packages_from_apk_chain():
    layer = _layer_with_command("echo hi && apk add --no-cache bash")
    assert layer.get_installed_packages_estimate() == ["add", "bash"]


def test_packages_semicolon_segments():
    layer = _layer_with_command("brew update; brew install jq")
    assert layer.get_installed_packages_estimate() == ["update", "install", "jq"]


def test_packages_none_for_other_commands():
    assert _layer_with_command("echo hello && ls -la").get_installed_packages_estimate() == []


def test_packages_never_contain_flags():
    layer = _layer_with_command("apt-get install -y --no-install-recommends a b && apk -q add c")
    packages = layer.get_installed_packages_estimate()
    assert packages
    assert all(not package.startswith("-") for package in packages)


def test_new_layer_indexes_files(built_layer):
    layer, digest, tar_path = built_layer
    assert layer.digest == digest
    assert layer.tar_path == tar_path
    assert layer.command == "apt install vim"
    assert "/app/hello.txt" in layer.file_system.ls("/")
    assert str(layer).startswith(f"[{digest}]({tar_path}) ")


def test_extract_writes_files_and_applies_whiteout(built_layer, tmp_path):
    layer, _, _ = built_layer
    out = tmp_path / "out"
    (out / "app").mkdir(parents=True)
    (out / "app" / "old.txt").write_text("stale")
    layer.extract_to_dir(str(out))
    assert (out / "app" / "hello.txt").read_bytes() == b"hello"
    assert (out / "etc" / "conf").read_bytes() == b"x=1"
    assert not (out / "app" / "old.txt").exists()
    assert not (out / "app" / ".wh.old.txt").exists()