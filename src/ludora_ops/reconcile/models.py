"""
ludora_ops.reconcile.models - 对账数据模型

- FileReference: 关系库中"此处应有文件"的一条引用（运行期内存对象，不持久化）
- ObjectRecord: 对象存储中实际存在的一个对象
- ReconciliationResult: 差异计算结果（orphans / missing / matched）
- CacheEntry: 单个 key 的校验结果缓存
- ProgressCheckpoint: 可恢复运行的持久化检查点
- QuarantineEntry: 已隔离对象的台账记录

仅 ProgressCheckpoint 与 QuarantineEntry 会在运行结束后持久保留。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import CheckpointCorruptError


class SourceKind(str, Enum):
    """引用来源的结构类型"""

    STRUCTURED = "structured-boolean-filename"
    LEGACY_URL = "legacy-url"
    JSONB_PATH = "jsonb-path"
    POLYMORPHIC = "polymorphic"


class CacheStatus(str, Enum):
    """缓存的校验结论"""

    ORPHAN_CONFIRMED = "orphan_confirmed"
    MATCHED = "matched"


class RunState(str, Enum):
    """对账运行状态"""

    INIT = "INIT"
    RESUMABLE = "RESUMABLE"
    COLLECTING_REFERENCES = "COLLECTING_REFERENCES"
    ANALYZING_STORE = "ANALYZING_STORE"
    DIFFING = "DIFFING"
    CONFIRMING = "CONFIRMING"
    QUARANTINING = "QUARANTINING"
    CHECKPOINTING = "CHECKPOINTING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(ts: Optional[datetime]) -> Optional[str]:
    """datetime -> ISO 8601（UTC，Z 后缀）"""
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """ISO 8601 字符串 -> 带时区的 datetime（兼容 Z 后缀）"""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class FileReference:
    """关系库中的一条文件引用"""

    entity_type: str
    entity_id: str
    field_name: str
    source_kind: SourceKind
    expected_key: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "field_name": self.field_name,
            "source_kind": self.source_kind.value,
            "expected_key": self.expected_key,
        }


@dataclass(frozen=True)
class ObjectRecord:
    """对象存储中实际存在的对象"""

    key: str
    size_bytes: int
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "size_bytes": self.size_bytes,
            "last_modified": format_ts(self.last_modified),
            "etag": self.etag,
        }


@dataclass(frozen=True)
class ObjectStat:
    """stat 结果（含用户元数据）"""

    key: str
    size_bytes: int
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    content_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @property
    def sha256(self) -> Optional[str]:
        return self.metadata.get("sha256")


@dataclass
class ReconciliationResult:
    """
    差异计算结果

    不变式:
        matched_count + |orphans|  == actual_count     （按对象计）
        matched_keys  + |missing|  == expected_count   （按规范化 key 计）
    """

    orphans: List[ObjectRecord] = field(default_factory=list)
    missing: List[FileReference] = field(default_factory=list)
    matched_count: int = 0
    matched_keys: int = 0
    expected_count: int = 0
    actual_count: int = 0
    # 多个引用映射到同一 key 的次数（仅提示）
    duplicate_references: int = 0
    # 大小写/分隔符规范化后冲突的对象数量（仅提示）
    object_key_collisions: int = 0

    def counts(self) -> Dict[str, int]:
        return {
            "references": self.expected_count,
            "objects": self.actual_count,
            "matched": self.matched_count,
            "matched_keys": self.matched_keys,
            "orphans": len(self.orphans),
            "missing": len(self.missing),
            "duplicate_references": self.duplicate_references,
        }


@dataclass
class CacheEntry:
    """单个 key 的校验结果缓存"""

    key: str
    status: CacheStatus
    verified_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "verified_at": format_ts(self.verified_at)}

    @classmethod
    def from_dict(cls, key: str, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            key=key,
            status=CacheStatus(data["status"]),
            verified_at=parse_ts(data["verified_at"]),
        )


@dataclass
class RunTotals:
    """检查点中的累计计数"""

    processed: int = 0
    quarantined: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "quarantined": self.quarantined,
            "skipped": self.skipped,
            "failed": self.failed,
        }


CHECKPOINT_STATUS_IN_PROGRESS = "in_progress"
CHECKPOINT_STATUS_COMPLETE = "complete"


@dataclass
class ProgressCheckpoint:
    """
    可恢复运行的检查点

    cursor 为最后一个已完整处理批次中的最大 key（孤儿按 key 排序），
    batches_completed 用于恢复后延续确定性的 batch_id 编号。
    """

    run_id: str
    environment: str
    cursor: Optional[str] = None
    batches_completed: int = 0
    totals: RunTotals = field(default_factory=RunTotals)
    status: str = CHECKPOINT_STATUS_IN_PROGRESS
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_resumable(self) -> bool:
        return self.status == CHECKPOINT_STATUS_IN_PROGRESS

    def covers(self, key: str) -> bool:
        """key 是否已被 cursor 覆盖（恢复时跳过）"""
        return self.cursor is not None and key <= self.cursor

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": 1,
            "run_id": self.run_id,
            "environment": self.environment,
            "cursor": self.cursor,
            "batches_completed": self.batches_completed,
            "totals": self.totals.to_dict(),
            "status": self.status,
            "updated_at": format_ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressCheckpoint":
        try:
            totals = data.get("totals") or {}
            return cls(
                run_id=str(data["run_id"]),
                environment=str(data["environment"]),
                cursor=data.get("cursor"),
                batches_completed=int(data.get("batches_completed", 0)),
                totals=RunTotals(
                    processed=int(totals.get("processed", 0)),
                    quarantined=int(totals.get("quarantined", 0)),
                    skipped=int(totals.get("skipped", 0)),
                    failed=int(totals.get("failed", 0)),
                ),
                status=str(data.get("status", CHECKPOINT_STATUS_IN_PROGRESS)),
                updated_at=parse_ts(data.get("updated_at")) or utcnow(),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointCorruptError(
                f"检查点格式无效: {e}",
                {"error": str(e)},
            ) from e


@dataclass(frozen=True)
class QuarantineEntry:
    """已隔离对象的台账记录，键为 (batch_id, original_key)"""

    original_key: str
    quarantine_key: str
    moved_at: datetime
    batch_id: str
    purge_after: datetime
    size_bytes: int = 0
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_key": self.original_key,
            "quarantine_key": self.quarantine_key,
            "moved_at": format_ts(self.moved_at),
            "batch_id": self.batch_id,
            "purge_after": format_ts(self.purge_after),
            "size_bytes": self.size_bytes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuarantineEntry":
        return cls(
            original_key=data["original_key"],
            quarantine_key=data["quarantine_key"],
            moved_at=parse_ts(data["moved_at"]),
            batch_id=data["batch_id"],
            purge_after=parse_ts(data["purge_after"]),
            size_bytes=int(data.get("size_bytes", 0)),
        )
