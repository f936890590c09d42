import sqlite3

import pytest

from whalewatch import cache_db
from whalewatch.cache_db import BaseImagePackageEntry, HitInfo, NoRowFound


@pytest.fixture
def conn():
    connection = cache_db.load_or_init_db(":memory:")
    yield connection
    connection.close()


def _row_count(conn, table):
    (count,) = conn.execute(f"SELECT Count(*) FROM {table}").fetchone()
    return count


def test_init_of_empty_db(conn):
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' "
        "AND name IN ('image_package_lookup', 'image_digest_lookup')"
    ).fetchall()
    assert sorted(name for (name,) in rows) == ["image_digest_lookup", "image_package_lookup"]


def test_add_image_digest(conn):
    assert _row_count(conn, "image_digest_lookup") == 0
    cache_db.add_image_digest(conn, "abc", "mydigest1")
    cache_db.add_image_digest(conn, "def", "mydigest2")
    assert _row_count(conn, "image_digest_lookup") == 2


def test_add_image_package(conn):
    assert _row_count(conn, "image_package_lookup") == 0
    cache_db.add_image_package(conn, "abc", "mydigest1", "v")
    cache_db.add_image_package(conn, "def", "mydigest2", "v")
    assert _row_count(conn, "image_package_lookup") == 2


def test_add_image_digest_skips_empty_values(conn):
    cache_db.add_image_digest(conn, "", "mydigest1")
    cache_db.add_image_digest(conn, "abc", "")
    assert _row_count(conn, "image_digest_lookup") == 0


def test_query_image_by_digest(conn):
    cache_db.add_image_digest(conn, "abc", "mydigest1")
    cache_db.add_image_digest(conn, "def", "mydigest2")
    assert cache_db.query_image_by_digest(conn, "mydigest2") == ["def"]
    assert cache_db.query_image_by_digest(conn, "unknown") == []


def test_query_elem_by_properties(conn):
    cache_db.add_image_package(conn, "abc", "curl", "v")
    cache_db.add_image_package(conn, "def", "git", "v")
    found = cache_db.query_elem_by_properties(conn, BaseImagePackageEntry(image="def"))
    assert found == BaseImagePackageEntry(image="def", package="git", package_version="v")
    combined = cache_db.query_elem_by_properties(
        conn, BaseImagePackageEntry(image="abc", package="curl")
    )
    assert combined.package == "curl"


def test_query_elem_by_properties_missing(conn):
    with pytest.raises(NoRowFound):
        cache_db.query_elem_by_properties(conn, BaseImagePackageEntry(image="nothing"))


def test_query_elem_by_properties_needs_a_property(conn):
    with pytest.raises(ValueError):
        cache_db.query_elem_by_properties(conn, BaseImagePackageEntry())


def test_do_query_returns_entries(conn):
    cache_db.add_image_package(conn, "abc", "curl", "v")
    entries = cache_db.do_query(conn, "SELECT * FROM image_package_lookup")
    assert entries == [BaseImagePackageEntry(image="abc", package="curl", package_version="v")]


def test_exec_statement_commits(conn):
    cache_db.exec_statement(
        conn, "INSERT INTO image_digest_lookup(image, digest) VALUES ('abc', 'mydigest1')"
    )
    assert cache_db.query_image_by_digest(conn, "mydigest1") == ["abc"]


def test_exec_statement_invalid_sql(conn):
    with pytest.raises(sqlite3.Error):
        cache_db.exec_statement(conn, "NOT SQL AT ALL")


def test_get_sorted_by_packages_counts_matches(conn):
    cache_db.add_image_package(conn, "abc", "curl", "")
    cache_db.add_image_package(conn, "abc", "git", "")
    cache_db.add_image_package(conn, "def", "curl", "")
    hits = cache_db.get_sorted_by_packages(conn, ["curl", "git"], [])
    assert {hit.image: hit.matched_packages for hit in hits} == {"abc": 2, "def": 1}
    scores = [hit.calc_score() for hit in hits]
    assert scores == sorted(scores)


def test_get_sorted_by_packages_no_match(conn):
    cache_db.add_image_package(conn, "abc", "curl", "")
    assert cache_db.get_sorted_by_packages(conn, ["vim"], []) == []


def test_get_sorted_by_packages_version_mismatch(conn):
    with pytest.raises(ValueError):
        cache_db.get_sorted_by_packages(conn, ["curl", "git"], ["1"])


def test_hit_info_score():
    assert HitInfo("abc", 2, 2).calc_score() == 2
    assert HitInfo("abc", 1, 2).calc_score() == 0


def test_load_or_init_db_persists(tmp_path):
    path = str(tmp_path / "cache.db")
    first = cache_db.load_or_init_db(path)
    cache_db.add_image_digest(first, "abc", "mydigest1")
    first.close()
    second = cache_db.load_or_init_db(path)
    try:
        assert cache_db.query_image_by_digest(second, "mydigest1") == ["abc"]
    finally:
        second.close()