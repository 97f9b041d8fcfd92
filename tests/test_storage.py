"""
Tests for the local key-value stores.

Covers the DuckDB-backed durable store and the in-memory store,
including quota accounting and persistence across sessions.
"""

import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from localsync.storage import DuckDBKeyValueStore, MemoryKeyValueStore, iter_prefixed, open_store
from localsync.sync.exceptions import StorageQuotaError


keys_strategy = st.text(min_size=1, max_size=20, alphabet=st.characters(whitelist_categories=('Lu', 'Ll', 'Nd')))


def test_memory_store_basic_operations():
    store = MemoryKeyValueStore()

    assert store.get("missing") is None
    store.set("a", '"1"')
    store.set("b", '"2"')
    assert store.get("a") == '"1"'
    assert sorted(store.keys()) == ["a", "b"]

    store.remove("a")
    store.remove("a")  # removing a missing key is a no-op
    assert store.get("a") is None
    assert list(store.keys()) == ["b"]


def test_quota_error_leaves_store_unchanged():
    store = MemoryKeyValueStore(quota_bytes=20)
    store.set("a", "12345")

    with pytest.raises(StorageQuotaError) as exc_info:
        store.set("b", "x" * 50)

    assert store.get("b") is None
    assert store.get("a") == "12345"
    assert exc_info.value.error_code == "storage_quota_exceeded"
    assert exc_info.value.details["quota_bytes"] == 20


def test_quota_counts_replacements_once():
    store = MemoryKeyValueStore(quota_bytes=10)
    store.set("k", "1234567")
    # Replacing the value frees the old size first
    store.set("k", "7654321")
    assert store.usage_bytes() == 8


@settings(max_examples=50)
@given(st.lists(st.tuples(st.booleans(), keys_strategy, st.text(max_size=30)), max_size=30))
def test_usage_matches_stored_entries(operations):
    """
    Property: usage accounting

    For any sequence of sets and removes, the reported usage equals the
    encoded size of the keys and values currently stored.
    """
    store = MemoryKeyValueStore()
    for is_set, key, value in operations:
        if is_set:
            store.set(key, value)
        else:
            store.remove(key)

    expected = sum(
        len(key.encode("utf-8")) + len(store.get(key).encode("utf-8"))
        for key in store.keys()
    )
    assert store.usage_bytes() == expected


def test_duckdb_store_persists_across_sessions():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "local.duckdb"

        with DuckDBKeyValueStore(db_path) as store:
            store.set("data:theme", '{"value": "dark"}')
            store.set("data:lang", '"de"')
            store.remove("data:lang")

        assert db_path.exists()

        with DuckDBKeyValueStore(db_path) as store:
            assert store.get("data:theme") == '{"value": "dark"}'
            assert store.get("data:lang") is None
            assert store.keys() == ["data:theme"]


def test_duckdb_store_reloads_quota_usage():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "local.duckdb"

        with DuckDBKeyValueStore(db_path, quota_bytes=40) as store:
            store.set("a", "x" * 20)
            usage = store.usage_bytes()

        with DuckDBKeyValueStore(db_path, quota_bytes=40) as store:
            assert store.usage_bytes() == usage
            with pytest.raises(StorageQuotaError):
                store.set("b", "y" * 30)
            assert store.get("b") is None


def test_duckdb_store_requires_open_connection():
    store = DuckDBKeyValueStore(Path(":memory:"))
    with pytest.raises(RuntimeError):
        store.get("a")


def test_open_store_selects_implementation():
    assert isinstance(open_store(None), MemoryKeyValueStore)

    with tempfile.TemporaryDirectory() as tmpdir:
        store = open_store(str(Path(tmpdir) / "local.duckdb"))
        try:
            assert isinstance(store, DuckDBKeyValueStore)
            assert store.conn is not None
        finally:
            store.close()


def test_iter_prefixed_filters_keys():
    store = MemoryKeyValueStore()
    for key in ["data:a", "data:b", "__sync__:queue", "legacy"]:
        store.set(key, "1")

    assert sorted(iter_prefixed(store, "data:")) == ["data:a", "data:b"]
