"""
ludora_ops.reconcile.check_cache - 校验结果缓存

记录 "key 在时间 T 被确认为 matched / orphan_confirmed"，
避免在阈值时间内对同一 key 重复做昂贵的校验。

安全规则:
    只有状态为 matched 且未过期的条目可以跳过；
    orphan_confirmed 永远不会被自动跳过（孤儿每次都要重新确认）。
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from .errors import CheckpointCorruptError, CheckpointPersistError, ErrorCode
from .models import CacheEntry, CacheStatus, utcnow
from .state import atomic_write_json, read_json

logger = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = 1


class FileCheckCache:
    def __init__(
        self,
        threshold: timedelta,
        path: Optional[Union[str, Path]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.threshold = threshold
        self.path = Path(path) if path else None
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def is_fresh(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.verified_at < self.threshold

    def should_skip(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.status != CacheStatus.MATCHED:
            return False
        return self.is_fresh(entry)

    def record(self, key: str, status: CacheStatus) -> None:
        self._entries[key] = CacheEntry(key=key, status=CacheStatus(status), verified_at=self._clock())

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in CacheStatus}
        for entry in self._entries.values():
            counts[entry.status.value] += 1
        return counts

    def load(self) -> "FileCheckCache":
        """
        从磁盘加载；文件不存在时为空缓存

        缓存损坏不影响正确性（只会导致重新校验），因此记录警告后以空缓存继续。
        """
        if self.path is None:
            return self
        try:
            data = read_json(self.path)
        except CheckpointCorruptError as e:
            logger.warning(f"校验缓存损坏，忽略: {e.message}")
            return self
        if not data:
            return self
        entries = data.get("entries", {}) if isinstance(data, dict) else {}
        for key, raw in entries.items():
            try:
                self._entries[key] = CacheEntry.from_dict(key, raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"忽略无效缓存条目 {key}: {e}")
        logger.debug(f"加载校验缓存 {len(self._entries)} 条: {self.path}")
        return self

    def prune(self) -> int:
        """移除已过期条目，返回移除数量"""
        expired = [k for k, e in self._entries.items() if not self.is_fresh(e)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def save(self) -> None:
        if self.path is None:
            return
        self.prune()
        payload = {
            "version": CACHE_FORMAT_VERSION,
            "entries": {k: e.to_dict() for k, e in sorted(self._entries.items())},
        }
        try:
            atomic_write_json(self.path, payload)
        except OSError as e:
            raise CheckpointPersistError(
                f"校验缓存写入失败: {self.path}",
                {"path": str(self.path), "error": str(e), "reason": ErrorCode.CHECKPOINT_PERSIST_FAILED},
            ) from e
