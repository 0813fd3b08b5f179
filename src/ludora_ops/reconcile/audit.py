"""
ludora_ops.reconcile.audit - 对账操作审计

审计事件同时写入:
    - logger "ludora_ops.reconcile.audit"（随主日志输出）
    - 追加写的 JSONL 文件 {state_dir}/audit/{env}.jsonl（可选）

operation 取值:
    confirmation.interactive    交互式确认（含用户回答）
    confirmation.forced         --force 跳过确认
    quarantine.move             单个对象隔离（成功或失败）
    lock.acquire / lock.release / lock.takeover / lock.force_release
    run.summary                 运行汇总

审计写入失败只记录警告，不影响对账本身。
"""

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .models import format_ts, utcnow
from .state import append_jsonl

audit_logger = logging.getLogger("ludora_ops.reconcile.audit")
logger = logging.getLogger(__name__)

OP_CONFIRM_INTERACTIVE = "confirmation.interactive"
OP_CONFIRM_FORCED = "confirmation.forced"
OP_QUARANTINE_MOVE = "quarantine.move"
OP_LOCK_ACQUIRE = "lock.acquire"
OP_LOCK_RELEASE = "lock.release"
OP_LOCK_TAKEOVER = "lock.takeover"
OP_LOCK_FORCE_RELEASE = "lock.force_release"
OP_RUN_SUMMARY = "run.summary"


@dataclass
class AuditEvent:
    """审计事件"""

    operation: str
    success: bool
    environment: Optional[str] = None
    run_id: Optional[str] = None
    key: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（排除 None 值）"""
        result = {k: v for k, v in asdict(self).items() if v is not None}
        result["event_ts"] = format_ts(utcnow())
        return result


class AuditTrail:
    """审计事件写入器（path 为空时只写日志）"""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None

    def write(self, event: AuditEvent) -> None:
        record = event.to_dict()
        level = logging.INFO if event.success else logging.WARNING
        audit_logger.log(
            level,
            f"{event.operation} success={event.success}"
            + (f" key={event.key}" if event.key else "")
            + (f" reason={event.reason}" if event.reason else ""),
        )
        if self.path is None:
            return
        try:
            append_jsonl(self.path, record)
        except OSError as e:
            logger.warning(f"审计事件写入失败 {self.path}: {e}")
