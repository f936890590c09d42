import os

import pytest

from whalewatch.runner.working_directory import (
    RunnerWorkingDirectory,
    get_referencing_working_directory_instance,
)


def _drain() -> None:
    wd = get_referencing_working_directory_instance()
    while wd.ref_count > 0:
        wd.free()


@pytest.fixture
def fresh_dir():
    _drain()
    wd = get_referencing_working_directory_instance()
    yield wd
    _drain()


def test_instance_is_shared_and_counted(fresh_dir):
    before = fresh_dir.ref_count
    other = get_referencing_working_directory_instance()
    assert other is fresh_dir
    assert fresh_dir.ref_count == before + 1
    other.free()
    assert fresh_dir.ref_count == before
    assert os.path.isdir(fresh_dir.tmp_dir_path)


def test_directory_removed_when_last_reference_freed(fresh_dir):
    path = fresh_dir.tmp_dir_path
    while fresh_dir.ref_count > 0:
        fresh_dir.free()
    assert not os.path.exists(path)
    new = get_referencing_working_directory_instance()
    assert new is not fresh_dir
    assert new.tmp_dir_path != path
    new.free()


def test_context_manager_frees_reference(fresh_dir):
    before = fresh_dir.ref_count
    with get_referencing_working_directory_instance() as wd:
        assert wd.ref_count == before + 1
    assert fresh_dir.ref_count == before


def test_get_absolute_path(fresh_dir):
    assert fresh_dir.get_absolute_path("./Dockerfile") == os.path.join(
        fresh_dir.tmp_dir_path, "Dockerfile"
    )


def test_populate_links_files(fresh_dir, tmp_path):
    dockerfile = tmp_path / "Dockerfile.src"
    oci = tmp_path / "oci.tar"
    docker = tmp_path / "docker.tar"
    dockerfile.write_text("FROM scratch\n")
    oci.write_bytes(b"oci")
    docker.write_bytes(b"docker")

    fresh_dir.populate(str(dockerfile), str(oci), str(docker))

    assert fresh_dir.is_populated
    assert (
        open(fresh_dir.get_absolute_path("Dockerfile")).read() == "FROM scratch\n"
    )
    assert open(fresh_dir.get_absolute_path("out.tar"), "rb").read() == b"oci"
    assert open(fresh_dir.get_absolute_path("out_docker.tar"), "rb").read() == b"docker"


def test_populate_is_done_only_once(fresh_dir, tmp_path):
    first = tmp_path / "first"
    first.write_text("one")
    second = tmp_path / "second"
    second.write_text("two")
    fresh_dir.populate(str(first), str(first), str(first))
    fresh_dir.populate(str(second), str(second), str(second))
    assert open(fresh_dir.get_absolute_path("Dockerfile")).read() == "one"


def test_populate_with_missing_source_stays_unpopulated(fresh_dir, tmp_path):
    missing = str(tmp_path / "missing")
    fresh_dir.populate(missing, missing, missing)
    assert fresh_dir.is_populated is False
    assert not os.path.exists(fresh_dir.get_absolute_path("Dockerfile"))


def test_free_on_plain_instance_removes_directory(tmp_path):
    target = tmp_path / "work"
    target.mkdir()
    wd = RunnerWorkingDirectory(str(target))
    wd.ref_count = 2
    wd.free()
    assert target.is_dir()
    wd.free()
    assert not target.exists()