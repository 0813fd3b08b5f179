# -*- coding: utf-8 -*-
"""
孤儿对象隔离测试

核心不变式: 任何一个对象在任何失败下都不会丢失，
要么仍在原 key，要么副本已在隔离区并通过校验。
"""

import json
from datetime import timedelta
from unittest.mock import patch

import pytest

from ludora_ops.reconcile.audit import OP_QUARANTINE_MOVE, AuditTrail
from ludora_ops.reconcile.errors import CheckpointPersistError, ErrorCode
from ludora_ops.reconcile.keys import build_quarantine_key, decode_original_key
from ludora_ops.reconcile.models import ObjectStat
from ludora_ops.reconcile.quarantine import (
    META_BATCH_ID,
    META_ORIGINAL_KEY,
    META_PURGE_AFTER,
    META_RUN_ID,
    QuarantineManager,
    verify_copy,
)

from fakes import ENV, InMemoryObjectStore, school_key

BATCH = "run-1-b00000"
TTL = timedelta(days=30)


@pytest.fixture
def store():
    store = InMemoryObjectStore()
    for n in (1, 2, 3):
        store.add(school_key(n), f"logo-{n}".encode("utf-8"), {"sha256": f"sha-{n}"})
    return store


@pytest.fixture
def manager(store, state_dir, frozen_clock):
    return QuarantineManager(
        store,
        ENV,
        "run-1",
        state_dir,
        TTL,
        workers=2,
        audit=AuditTrail(state_dir / "audit" / f"{ENV}.jsonl"),
        clock=frozen_clock,
    )


def records(store, *numbers):
    return [store._record(school_key(n)) for n in numbers]


def assert_not_lost(store, key, batch_id=BATCH):
    """对象要么在原位置，要么在隔离区"""
    assert key in store.objects or build_quarantine_key(ENV, batch_id, key) in store.objects


class TestVerifyCopy:
    def test_size_mismatch(self):
        assert verify_copy(ObjectStat("a", 10, etag="x"), ObjectStat("b", 9, etag="x"))

    def test_single_part_etag(self):
        assert verify_copy(ObjectStat("a", 10, etag="x"), ObjectStat("b", 10, etag="x")) is None
        assert verify_copy(ObjectStat("a", 10, etag="x"), ObjectStat("b", 10, etag="y"))

    def test_multipart_falls_back_to_sha256(self):
        src = ObjectStat("a", 10, etag="abc-2", metadata={"sha256": "s1"})
        same = ObjectStat("b", 10, etag="def-3", metadata={"sha256": "s1"})
        other = ObjectStat("b", 10, etag="def-3", metadata={"sha256": "s2"})
        assert verify_copy(src, same) is None
        assert verify_copy(src, other)


class TestQuarantine:
    def test_moves_to_quarantine_prefix(self, manager, store, frozen_clock):
        result = manager.quarantine(records(store, 1, 2), batch_id=BATCH)
        assert [e.original_key for e in result.entries] == [school_key(1), school_key(2)]
        assert result.failures == []

        for n in (1, 2):
            original = school_key(n)
            copy_key = build_quarantine_key(ENV, BATCH, original)
            assert original not in store.objects
            assert store.objects[copy_key] == f"logo-{n}".encode("utf-8")
            assert copy_key.startswith(f"{ENV}/quarantine/{BATCH}/")
            meta = store.metadata[copy_key]
            assert decode_original_key(meta[META_ORIGINAL_KEY]) == original
            assert meta[META_BATCH_ID] == BATCH
            assert meta[META_RUN_ID] == "run-1"
            assert meta[META_PURGE_AFTER] == "2025-07-01T12:00:00Z"
        # 批次外的对象不受影响
        assert school_key(3) in store.objects

    def test_ledger_written(self, manager, store, state_dir):
        manager.quarantine(records(store, 1, 2), batch_id=BATCH)
        ledger = manager.load_ledger(BATCH)
        assert [e.original_key for e in ledger] == [school_key(1), school_key(2)]
        assert ledger[0].purge_after - ledger[0].moved_at == TTL
        path = state_dir / "quarantine" / ENV / f"{BATCH}.json"
        assert json.loads(path.read_text(encoding="utf-8"))["batch_id"] == BATCH

    def test_audit_events(self, manager, store, state_dir):
        store.fail_copy_keys.add(school_key(2))
        manager.quarantine(records(store, 1, 2), batch_id=BATCH)
        lines = (state_dir / "audit" / f"{ENV}.jsonl").read_text(encoding="utf-8").splitlines()
        events = sorted((json.loads(line) for line in lines), key=lambda e: e["key"])
        assert [e["operation"] for e in events] == [OP_QUARANTINE_MOVE, OP_QUARANTINE_MOVE]
        assert [e["success"] for e in events] == [True, False]
        assert events[1]["reason"] == ErrorCode.QUARANTINE_COPY_FAILED

    def test_dry_run_has_no_side_effects(self, manager, store, state_dir):
        before = dict(store.objects)
        result = manager.quarantine(records(store, 1, 2), dry_run=True, batch_id=BATCH)
        assert result.dry_run
        assert all(e.dry_run for e in result.entries)
        assert result.entries[0].quarantine_key == build_quarantine_key(ENV, BATCH, school_key(1))
        assert store.mutations() == []
        assert store.objects == before
        assert not (state_dir / "quarantine").exists()

    def test_default_batch_id(self, manager, store):
        result = manager.quarantine(records(store, 1))
        assert result.batch_id == "run-1-b00000"


class TestFailures:
    def test_copy_failure_keeps_original(self, manager, store):
        store.fail_copy_keys.add(school_key(1))
        result = manager.quarantine(records(store, 1, 2), batch_id=BATCH)
        assert [f.key for f in result.failures] == [school_key(1)]
        assert result.failures[0].reason == ErrorCode.QUARANTINE_COPY_FAILED
        assert school_key(1) in store.objects
        # 其余对象不受影响
        assert [e.original_key for e in result.entries] == [school_key(2)]

    def test_verify_mismatch_never_deletes_original(self, manager, store):
        store.corrupt_copy_keys.add(school_key(1))
        result = manager.quarantine(records(store, 1), batch_id=BATCH)
        assert result.failures[0].reason == ErrorCode.QUARANTINE_VERIFY_MISMATCH
        assert store.objects[school_key(1)] == b"logo-1"
        assert ("delete", school_key(1)) not in store.calls
        # 损坏的副本被清理
        assert build_quarantine_key(ENV, BATCH, school_key(1)) not in store.objects
        assert manager.load_ledger(BATCH) == []

    def test_delete_failure_leaves_both_copies(self, manager, store):
        store.fail_delete_keys.add(school_key(1))
        result = manager.quarantine(records(store, 1), batch_id=BATCH)
        assert result.failures[0].reason == ErrorCode.QUARANTINE_DELETE_FAILED
        assert school_key(1) in store.objects
        assert build_quarantine_key(ENV, BATCH, school_key(1)) in store.objects
        assert manager.load_ledger(BATCH) == []

    def test_no_object_lost_under_mixed_failures(self, manager, store):
        store.fail_copy_keys.add(school_key(1))
        store.corrupt_copy_keys.add(school_key(2))
        store.fail_delete_keys.add(school_key(3))
        manager.quarantine(records(store, 1, 2, 3), batch_id=BATCH)
        for n in (1, 2, 3):
            assert_not_lost(store, school_key(n))

    def test_source_gone(self, manager, store):
        batch = records(store, 1)
        del store.objects[school_key(1)]
        result = manager.quarantine(batch, batch_id=BATCH)
        assert result.failures[0].reason == ErrorCode.QUARANTINE_SOURCE_GONE

    def test_source_gone_but_copy_present_is_recorded(self, manager, store):
        """上次运行在删除之后、写台账之前中断: 补记台账"""
        batch = records(store, 1)
        copy_key = build_quarantine_key(ENV, BATCH, school_key(1))
        store.add(copy_key, store.objects.pop(school_key(1)))
        result = manager.quarantine(batch, batch_id=BATCH)
        assert result.failures == []
        assert [e.quarantine_key for e in manager.load_ledger(BATCH)] == [copy_key]

    def test_ledger_write_failure_stops_run(self, manager, store):
        with patch("ludora_ops.reconcile.quarantine.atomic_write_json", side_effect=OSError("disk full")):
            with pytest.raises(CheckpointPersistError):
                manager.quarantine(records(store, 1, 2), batch_id=BATCH)
        for n in (1, 2):
            assert_not_lost(store, school_key(n))
