"""
ludora_ops.reconcile.quarantine - 孤儿对象隔离

隔离协议（每个对象）:
    1. copy   原对象 -> {env}/quarantine/{batch_id}/{original_key_encoded}
              （附带 purge-after / original-key / batch-id / run-id 元数据）
    2. verify stat 副本，大小一致；两侧 etag 均为单段上传 etag 时比较 etag，
              否则在两侧都有 sha256 元数据时比较 sha256
    3. delete 校验通过后才删除原对象
    4. record 写入批次台账 {state_dir}/quarantine/{env}/{batch_id}.json

任一步失败只影响该对象（QuarantineMoveError，计入 failed，下次运行重试），
不会中止整个批次；校验失败时原对象绝不会被删除。
台账写入失败是系统级错误（CheckpointPersistError），整个运行停止。

dry_run=True 时只生成计划中的条目，不对存储做任何修改，也不写台账。
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from .audit import OP_QUARANTINE_MOVE, AuditEvent, AuditTrail
from .errors import (
    CheckpointPersistError,
    ErrorCode,
    ObjectNotFoundError,
    ObjectStoreError,
    QuarantineMoveError,
)
from .keys import build_quarantine_key, encode_original_key
from .models import ObjectRecord, ObjectStat, QuarantineEntry, format_ts, utcnow
from .object_store import ObjectStoreAdapter
from .state import StateLayout, atomic_write_json, read_json

logger = logging.getLogger(__name__)

META_PURGE_AFTER = "purge-after"
META_ORIGINAL_KEY = "original-key"
META_BATCH_ID = "batch-id"
META_RUN_ID = "run-id"


@dataclass(frozen=True)
class QuarantineFailure:
    key: str
    reason: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"key": self.key, "reason": self.reason, "message": self.message}


@dataclass
class BatchResult:
    """单个批次的隔离结果"""

    batch_id: str
    entries: List[QuarantineEntry] = field(default_factory=list)
    failures: List[QuarantineFailure] = field(default_factory=list)
    dry_run: bool = False


def _is_single_part_etag(etag: Optional[str]) -> bool:
    return bool(etag) and "-" not in etag


def verify_copy(source: ObjectStat, copy: ObjectStat) -> Optional[str]:
    """
    比较原对象与副本，返回不一致描述；一致时返回 None
    """
    if source.size_bytes != copy.size_bytes:
        return f"大小不一致: {source.size_bytes} != {copy.size_bytes}"
    if _is_single_part_etag(source.etag) and _is_single_part_etag(copy.etag):
        if source.etag != copy.etag:
            return f"etag 不一致: {source.etag} != {copy.etag}"
        return None
    if source.sha256 and copy.sha256 and source.sha256 != copy.sha256:
        return f"sha256 不一致: {source.sha256} != {copy.sha256}"
    return None


class QuarantineManager:
    """
    用法:
        manager = QuarantineManager(store, "production", run_id, state_dir, ttl)
        result = manager.quarantine(batch, dry_run=False, batch_id="run-b00000")
    """

    def __init__(
        self,
        store: ObjectStoreAdapter,
        environment: str,
        run_id: str,
        state_dir: Union[str, Path],
        ttl: timedelta,
        workers: int = 8,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.environment = environment
        self.run_id = run_id
        self.layout = StateLayout(state_dir)
        self.ttl = ttl
        self.workers = max(1, workers)
        self.audit = audit or AuditTrail()
        self._clock = clock
        self._ledger_lock = threading.Lock()

    # ---- 台账 ----

    def load_ledger(self, batch_id: str) -> List[QuarantineEntry]:
        data = read_json(self.layout.quarantine_ledger_path(self.environment, batch_id))
        if not data:
            return []
        return [QuarantineEntry.from_dict(e) for e in data.get("entries", [])]

    def _record(self, entry: QuarantineEntry) -> None:
        """追加台账条目，键为 (batch_id, original_key)"""
        path = self.layout.quarantine_ledger_path(self.environment, entry.batch_id)
        with self._ledger_lock:
            try:
                existing = {e.original_key: e for e in self.load_ledger(entry.batch_id)}
                existing[entry.original_key] = entry
                atomic_write_json(
                    path,
                    {
                        "version": 1,
                        "environment": self.environment,
                        "batch_id": entry.batch_id,
                        "run_id": self.run_id,
                        "entries": [e.to_dict() for _, e in sorted(existing.items())],
                    },
                )
            except OSError as e:
                raise CheckpointPersistError(
                    f"隔离台账写入失败: {path}",
                    {"path": str(path), "batch_id": entry.batch_id, "error": str(e),
                     "reason": ErrorCode.CHECKPOINT_PERSIST_FAILED},
                ) from e

    # ---- 单对象 ----

    def plan_entry(self, record: ObjectRecord, batch_id: str, now: datetime, dry_run: bool) -> QuarantineEntry:
        return QuarantineEntry(
            original_key=record.key,
            quarantine_key=build_quarantine_key(self.environment, batch_id, record.key),
            moved_at=now,
            batch_id=batch_id,
            purge_after=now + self.ttl,
            size_bytes=record.size_bytes,
            dry_run=dry_run,
        )

    def _recover_existing_copy(self, entry: QuarantineEntry) -> Optional[QuarantineEntry]:
        """原对象已不存在: 若副本已在隔离区（上次运行中断于删除之后），补记台账"""
        try:
            copy_stat = self.store.stat(entry.quarantine_key)
        except ObjectNotFoundError:
            return None
        logger.info(f"原对象已隔离，补记台账: {entry.original_key}")
        return QuarantineEntry(
            original_key=entry.original_key,
            quarantine_key=entry.quarantine_key,
            moved_at=entry.moved_at,
            batch_id=entry.batch_id,
            purge_after=entry.purge_after,
            size_bytes=copy_stat.size_bytes,
        )

    def _move_one(self, record: ObjectRecord, batch_id: str, now: datetime) -> QuarantineEntry:
        """
        Raises:
            QuarantineMoveError: 复制 / 校验 / 删除失败
            CheckpointPersistError: 台账写入失败
        """
        entry = self.plan_entry(record, batch_id, now, dry_run=False)
        src_key, dst_key = entry.original_key, entry.quarantine_key
        details = {"key": src_key, "quarantine_key": dst_key, "batch_id": batch_id}

        try:
            source_stat = self.store.stat(src_key)
        except ObjectNotFoundError as e:
            recovered = self._recover_existing_copy(entry)
            if recovered is not None:
                self._record(recovered)
                return recovered
            raise QuarantineMoveError(
                f"原对象已不存在: {src_key}", details, reason=ErrorCode.QUARANTINE_SOURCE_GONE
            ) from e
        except ObjectStoreError as e:
            raise QuarantineMoveError(
                f"stat 失败: {src_key}: {e.message}", details, reason=ErrorCode.QUARANTINE_COPY_FAILED
            ) from e

        metadata = {
            META_PURGE_AFTER: format_ts(entry.purge_after),
            META_ORIGINAL_KEY: encode_original_key(src_key),
            META_BATCH_ID: batch_id,
            META_RUN_ID: self.run_id,
        }
        try:
            self.store.copy(src_key, dst_key, metadata)
        except ObjectStoreError as e:
            raise QuarantineMoveError(
                f"复制失败: {src_key}: {e.message}", details, reason=ErrorCode.QUARANTINE_COPY_FAILED
            ) from e

        try:
            copy_stat = self.store.stat(dst_key)
        except ObjectNotFoundError as e:
            raise QuarantineMoveError(
                f"副本不存在: {dst_key}", details, reason=ErrorCode.QUARANTINE_VERIFY_MISSING
            ) from e
        except ObjectStoreError as e:
            raise QuarantineMoveError(
                f"副本 stat 失败: {dst_key}: {e.message}", details,
                reason=ErrorCode.QUARANTINE_VERIFY_MISSING,
            ) from e

        mismatch = verify_copy(source_stat, copy_stat)
        if mismatch:
            self._discard_bad_copy(dst_key)
            raise QuarantineMoveError(
                f"副本校验失败: {src_key}: {mismatch}",
                dict(details, mismatch=mismatch),
                reason=ErrorCode.QUARANTINE_VERIFY_MISMATCH,
            )

        try:
            self.store.delete(src_key)
        except ObjectStoreError as e:
            raise QuarantineMoveError(
                f"删除原对象失败: {src_key}: {e.message}", details,
                reason=ErrorCode.QUARANTINE_DELETE_FAILED,
            ) from e

        entry = QuarantineEntry(
            original_key=src_key,
            quarantine_key=dst_key,
            moved_at=entry.moved_at,
            batch_id=batch_id,
            purge_after=entry.purge_after,
            size_bytes=source_stat.size_bytes,
        )
        self._record(entry)
        return entry

    def _discard_bad_copy(self, dst_key: str) -> None:
        try:
            self.store.delete(dst_key)
        except ObjectStoreError as e:
            logger.warning(f"清理校验失败的副本失败 {dst_key}: {e.message}")

    # ---- 批次 ----

    def quarantine(
        self,
        batch: Sequence[ObjectRecord],
        dry_run: bool = False,
        batch_id: Optional[str] = None,
    ) -> BatchResult:
        """
        隔离一个批次

        所有对象的操作都结束（成功或失败）后才返回。

        Raises:
            CheckpointPersistError: 台账写入失败（其余在途操作完成后抛出）
        """
        batch_id = batch_id or f"{self.run_id}-b00000"
        now = self._clock()
        result = BatchResult(batch_id=batch_id, dry_run=dry_run)

        if dry_run:
            result.entries = [self.plan_entry(r, batch_id, now, dry_run=True) for r in batch]
            return result

        persist_error: Optional[CheckpointPersistError] = None
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = {executor.submit(self._move_one, r, batch_id, now): r for r in batch}
            for future in as_completed(futures):
                record = futures[future]
                try:
                    entry = future.result()
                except QuarantineMoveError as e:
                    failure = QuarantineFailure(key=record.key, reason=e.reason, message=e.message)
                    result.failures.append(failure)
                    logger.warning(f"隔离失败 {record.key}: {e.message}")
                    self.audit.write(
                        AuditEvent(
                            operation=OP_QUARANTINE_MOVE,
                            success=False,
                            environment=self.environment,
                            run_id=self.run_id,
                            key=record.key,
                            reason=e.reason,
                            error=e.message,
                            details={"batch_id": batch_id},
                        )
                    )
                    continue
                except CheckpointPersistError as e:
                    persist_error = persist_error or e
                    continue
                result.entries.append(entry)
                self.audit.write(
                    AuditEvent(
                        operation=OP_QUARANTINE_MOVE,
                        success=True,
                        environment=self.environment,
                        run_id=self.run_id,
                        key=entry.original_key,
                        details={
                            "batch_id": batch_id,
                            "quarantine_key": entry.quarantine_key,
                            "purge_after": format_ts(entry.purge_after),
                            "size_bytes": entry.size_bytes,
                        },
                    )
                )

        if persist_error is not None:
            raise persist_error
        result.entries.sort(key=lambda e: e.original_key)
        result.failures.sort(key=lambda f: f.key)
        logger.info(
            f"批次 {batch_id}: 隔离 {len(result.entries)}，失败 {len(result.failures)}"
        )
        return result
