# -*- coding: utf-8 -*-
"""
校验结果缓存测试

核心规则: orphan_confirmed 永远不会被跳过；matched 仅在阈值内跳过。
"""

import json
from datetime import timedelta
from unittest.mock import patch

import pytest

from ludora_ops.reconcile.check_cache import FileCheckCache
from ludora_ops.reconcile.errors import CheckpointPersistError
from ludora_ops.reconcile.models import CacheStatus

KEY = "production/public/image/school/1/logo1.png"


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "cache" / "production.json"


class TestShouldSkip:
    def test_unknown_key(self, frozen_clock):
        cache = FileCheckCache(timedelta(hours=24), clock=frozen_clock)
        assert cache.should_skip(KEY) is False

    def test_fresh_matched_skipped(self, frozen_clock):
        cache = FileCheckCache(timedelta(hours=24), clock=frozen_clock)
        cache.record(KEY, CacheStatus.MATCHED)
        frozen_clock.advance(timedelta(hours=23))
        assert cache.should_skip(KEY) is True

    def test_expired_matched_not_skipped(self, frozen_clock):
        cache = FileCheckCache(timedelta(hours=24), clock=frozen_clock)
        cache.record(KEY, CacheStatus.MATCHED)
        frozen_clock.advance(timedelta(hours=24))
        assert cache.should_skip(KEY) is False

    def test_orphan_confirmed_never_skipped(self, frozen_clock):
        cache = FileCheckCache(timedelta(days=365), clock=frozen_clock)
        cache.record(KEY, CacheStatus.ORPHAN_CONFIRMED)
        assert cache.should_skip(KEY) is False

    def test_record_overwrites(self, frozen_clock):
        cache = FileCheckCache(timedelta(hours=24), clock=frozen_clock)
        cache.record(KEY, CacheStatus.MATCHED)
        cache.record(KEY, CacheStatus.ORPHAN_CONFIRMED)
        assert cache.get(KEY).status == CacheStatus.ORPHAN_CONFIRMED
        assert cache.counts() == {"orphan_confirmed": 1, "matched": 0}


class TestPersistence:
    def test_round_trip(self, cache_path, frozen_clock):
        cache = FileCheckCache(timedelta(hours=24), path=cache_path, clock=frozen_clock)
        cache.record(KEY, CacheStatus.MATCHED)
        cache.record("other", CacheStatus.ORPHAN_CONFIRMED)
        cache.save()

        loaded = FileCheckCache(timedelta(hours=24), path=cache_path, clock=frozen_clock).load()
        assert len(loaded) == 2
        assert loaded.should_skip(KEY) is True
        assert loaded.get("other").verified_at == frozen_clock()

    def test_save_prunes_expired(self, cache_path, frozen_clock):
        cache = FileCheckCache(timedelta(hours=1), path=cache_path, clock=frozen_clock)
        cache.record("old", CacheStatus.MATCHED)
        frozen_clock.advance(timedelta(hours=2))
        cache.record("new", CacheStatus.MATCHED)
        cache.save()
        data = json.loads(cache_path.read_text(encoding="utf-8"))
        assert list(data["entries"]) == ["new"]

    def test_missing_file_is_empty(self, cache_path):
        assert len(FileCheckCache(timedelta(hours=1), path=cache_path).load()) == 0

    def test_corrupt_file_ignored(self, cache_path):
        cache_path.parent.mkdir(parents=True)
        cache_path.write_text("{not json", encoding="utf-8")
        assert len(FileCheckCache(timedelta(hours=1), path=cache_path).load()) == 0

    def test_invalid_entry_ignored(self, cache_path, frozen_clock):
        cache_path.parent.mkdir(parents=True)
        cache_path.write_text(
            json.dumps(
                {
                    "version": 1,
                    "entries": {
                        "bad": {"status": "unknown", "verified_at": "2025-06-01T00:00:00Z"},
                        "good": {"status": "matched", "verified_at": "2025-06-01T11:00:00Z"},
                    },
                }
            ),
            encoding="utf-8",
        )
        cache = FileCheckCache(timedelta(hours=24), path=cache_path, clock=frozen_clock).load()
        assert cache.get("bad") is None
        assert cache.should_skip("good") is True

    def test_write_failure(self, cache_path):
        cache = FileCheckCache(timedelta(hours=1), path=cache_path)
        cache.record(KEY, CacheStatus.MATCHED)
        with patch("ludora_ops.reconcile.check_cache.atomic_write_json", side_effect=OSError("disk full")):
            with pytest.raises(CheckpointPersistError):
                cache.save()

    def test_memory_only_cache(self):
        cache = FileCheckCache(timedelta(hours=1))
        cache.record(KEY, CacheStatus.MATCHED)
        cache.save()
        assert cache.load() is cache
