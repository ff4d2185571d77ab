"""
Tests for enforcement set membership handling.
"""
import logging

import pytest

from blacklist_common import SetNotFoundError
from blacklist_nft import SetReconciler
from conftest import MemorySet, prefix


def test_ensure_set_exists_creates_once():
    backend = MemorySet(present=False)
    reconciler = SetReconciler(backend)

    reconciler.ensure_set_exists()
    assert backend.present
    reconciler.ensure_set_exists()
    assert backend.present


def test_require_set_raises_with_hint():
    reconciler = SetReconciler(MemorySet(present=False))
    with pytest.raises(SetNotFoundError) as excinfo:
        reconciler.require_set()
    assert "update-blacklists" in excinfo.value.hint


def test_add_is_idempotent(reconciler, memory_set, caplog):
    assert reconciler.add(prefix("203.0.113.7")) is True
    with caplog.at_level(logging.WARNING):
        assert reconciler.add(prefix("203.0.113.7")) is False

    assert memory_set.members == {prefix("203.0.113.7")}
    assert "already in the blacklist" in caplog.text


def test_remove_absent_is_a_noop(reconciler, memory_set, caplog):
    with caplog.at_level(logging.WARNING):
        assert reconciler.remove(prefix("203.0.113.7")) is False
    assert memory_set.members == set()
    assert "not in the blacklist" in caplog.text


def test_remove_present(reconciler, memory_set):
    reconciler.add(prefix("81.30.0.0/16"))
    assert reconciler.remove(prefix("81.30.0.0/16")) is True
    assert not reconciler.contains(prefix("81.30.0.0/16"))


def test_contains_is_textual():
    reconciler = SetReconciler(MemorySet(members=["10.0.0.0/8"]))
    assert reconciler.contains(prefix("10.0.0.0/8"))
    assert not reconciler.contains(prefix("10.1.2.3"))


def test_add_many_deduplicates_and_chunks():
    backend = MemorySet()
    reconciler = SetReconciler(backend, chunk_size=2)
    items = [prefix(p) for p in ["1.1.1.1", "2.2.2.2", "1.1.1.1", "3.3.3.3"]]

    result = reconciler.add_many(items)

    assert result.applied == 3
    assert result.failed == 0
    assert backend.add_calls == 2
    assert reconciler.snapshot() == {prefix("1.1.1.1"), prefix("2.2.2.2"), prefix("3.3.3.3")}


def test_add_many_isolates_failing_entry(caplog):
    backend = MemorySet(fail_on=["2.2.2.2"])
    reconciler = SetReconciler(backend, chunk_size=10)
    items = [prefix(p) for p in ["1.1.1.1", "2.2.2.2", "3.3.3.3"]]

    with caplog.at_level(logging.WARNING):
        result = reconciler.add_many(items)

    assert result.applied == 2
    assert result.failed == 1
    assert backend.members == {prefix("1.1.1.1"), prefix("3.3.3.3")}
    assert "Failed to add 2.2.2.2" in caplog.text


def test_add_many_preserves_existing_members():
    backend = MemorySet(members=["81.30.0.0/16"])
    reconciler = SetReconciler(backend)

    reconciler.add_many([prefix("192.0.2.0/24")])

    assert prefix("81.30.0.0/16") in backend.members
    assert prefix("192.0.2.0/24") in backend.members
