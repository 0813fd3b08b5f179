# -*- coding: utf-8 -*-
"""
进度检查点测试
"""

import json
import os
from unittest.mock import patch

import pytest

from ludora_ops.reconcile.errors import CheckpointCorruptError, CheckpointPersistError
from ludora_ops.reconcile.models import (
    CHECKPOINT_STATUS_COMPLETE,
    ProgressCheckpoint,
    RunTotals,
)
from ludora_ops.reconcile.progress import ProgressTracker


@pytest.fixture
def tracker(state_dir):
    return ProgressTracker(state_dir, "production")


class TestCheckpointModel:
    def test_covers(self):
        checkpoint = ProgressCheckpoint(run_id="r", environment="production", cursor="m")
        assert checkpoint.covers("a")
        assert checkpoint.covers("m")
        assert not checkpoint.covers("n")
        assert not ProgressCheckpoint(run_id="r", environment="production").covers("a")

    def test_from_dict_invalid(self):
        with pytest.raises(CheckpointCorruptError):
            ProgressCheckpoint.from_dict({"environment": "production"})


class TestTracker:
    def test_round_trip(self, tracker):
        checkpoint = ProgressCheckpoint(
            run_id="run-1",
            environment="production",
            cursor="production/public/x",
            batches_completed=3,
            totals=RunTotals(processed=6, quarantined=5, skipped=1, failed=1),
        )
        tracker.save(checkpoint)
        loaded = tracker.load("run-1")
        assert loaded.cursor == "production/public/x"
        assert loaded.batches_completed == 3
        assert loaded.totals == RunTotals(processed=6, quarantined=5, skipped=1, failed=1)
        assert loaded.is_resumable

    def test_load_missing(self, tracker):
        assert tracker.load("nope") is None

    def test_no_temp_files_left(self, tracker):
        tracker.save(ProgressCheckpoint(run_id="run-1", environment="production"))
        directory = tracker.path_for("run-1").parent
        assert os.listdir(directory) == ["run-1.json"]

    def test_corrupt_file(self, tracker):
        path = tracker.path_for("run-1")
        path.parent.mkdir(parents=True)
        path.write_text("{", encoding="utf-8")
        with pytest.raises(CheckpointCorruptError):
            tracker.load("run-1")

    def test_environment_mismatch(self, tracker):
        path = tracker.path_for("run-1")
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"run_id": "run-1", "environment": "staging"}), encoding="utf-8")
        with pytest.raises(CheckpointCorruptError):
            tracker.load("run-1")

    def test_write_failure(self, tracker):
        with patch("ludora_ops.reconcile.progress.atomic_write_json", side_effect=OSError("read-only")):
            with pytest.raises(CheckpointPersistError):
                tracker.save(ProgressCheckpoint(run_id="run-1", environment="production"))


class TestListing:
    def test_latest_resumable(self, tracker):
        done = ProgressCheckpoint(run_id="run-a", environment="production", status=CHECKPOINT_STATUS_COMPLETE)
        tracker.save(done)
        tracker.save(ProgressCheckpoint(run_id="run-b", environment="production"))
        assert tracker.latest_resumable().run_id == "run-b"

    def test_no_resumable(self, tracker):
        tracker.save(
            ProgressCheckpoint(run_id="run-a", environment="production", status=CHECKPOINT_STATUS_COMPLETE)
        )
        assert tracker.latest_resumable() is None

    def test_corrupt_files_skipped(self, tracker):
        tracker.save(ProgressCheckpoint(run_id="run-a", environment="production"))
        tracker.path_for("broken").write_text("{", encoding="utf-8")
        assert [c.run_id for c in tracker.list()] == ["run-a"]

    def test_environments_isolated(self, state_dir, tracker):
        ProgressTracker(state_dir, "staging").save(ProgressCheckpoint(run_id="run-s", environment="staging"))
        assert tracker.list() == []
