"""
ludora_ops.reconcile.run_lock - 环境级运行锁（带租约）

破坏性运行（非 dry-run 的隔离阶段）在对象存储中写入锁标记:
    {env}/.locks/reconcile.lock
    {"run_id": ..., "owner": "host:pid", "acquired_at": ..., "lease_expires_at": ...}

规则:
    - 锁不存在: 写入并获得
    - 锁存在且租约未过期: 同一 run_id 视为续租，否则 RunLockError
    - 锁存在但租约已过期: 接管（记录警告与审计事件）
    - 隔离过程中每个检查点后 renew 续租；锁已丢失时 RunLockError
    - release 只删除自己持有的锁；force_release 无条件删除（运维用）

对象存储没有条件写入原语，锁是"建议性"的: 写入后回读确认持有者，
用于阻止误操作并发，而不是严格互斥。
"""

import json
import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .audit import (
    OP_LOCK_ACQUIRE,
    OP_LOCK_FORCE_RELEASE,
    OP_LOCK_RELEASE,
    OP_LOCK_TAKEOVER,
    AuditEvent,
    AuditTrail,
)
from .errors import ErrorCode, ObjectNotFoundError, ObjectStoreError, RunLockError
from .keys import lock_key
from .models import format_ts, parse_ts, utcnow
from .object_store import ObjectStoreAdapter

logger = logging.getLogger(__name__)


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass(frozen=True)
class LockInfo:
    run_id: str
    owner: str
    acquired_at: datetime
    lease_expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.lease_expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "owner": self.owner,
            "acquired_at": format_ts(self.acquired_at),
            "lease_expires_at": format_ts(self.lease_expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LockInfo":
        return cls(
            run_id=str(data["run_id"]),
            owner=str(data.get("owner", "")),
            acquired_at=parse_ts(data["acquired_at"]),
            lease_expires_at=parse_ts(data["lease_expires_at"]),
        )


class RunLock:
    def __init__(
        self,
        store: ObjectStoreAdapter,
        environment: str,
        lease: timedelta,
        audit: Optional[AuditTrail] = None,
        owner: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.environment = environment
        self.lease = lease
        self.audit = audit or AuditTrail()
        self.owner = owner or default_owner()
        self.key = lock_key(environment)
        self._clock = clock

    def get(self) -> Optional[LockInfo]:
        """读取当前锁；无锁返回 None，锁内容损坏视为已过期"""
        try:
            raw = self.store.get_bytes(self.key)
        except ObjectNotFoundError:
            return None
        try:
            return LockInfo.from_dict(json.loads(raw.decode("utf-8")))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"运行锁内容无效，视为已过期: {self.key}: {e}")
            epoch = parse_ts("1970-01-01T00:00:00Z")
            return LockInfo(run_id="", owner="", acquired_at=epoch, lease_expires_at=epoch)

    def _write(self, run_id: str, now: datetime) -> LockInfo:
        info = LockInfo(
            run_id=run_id,
            owner=self.owner,
            acquired_at=now,
            lease_expires_at=now + self.lease,
        )
        self.store.put_bytes(
            self.key,
            json.dumps(info.to_dict(), sort_keys=True).encode("utf-8"),
            {"run-id": run_id},
        )
        return info

    def acquire(self, run_id: str) -> LockInfo:
        """
        Raises:
            RunLockError: 锁被其他运行持有且租约未过期，或写入后回读发现被抢占
        """
        now = self._clock()
        try:
            current = self.get()
            takeover = False
            if current is not None and current.run_id != run_id:
                if not current.is_expired(now):
                    raise RunLockError(
                        f"环境 {self.environment} 的运行锁被 {current.run_id} ({current.owner}) 持有，"
                        f"租约至 {format_ts(current.lease_expires_at)}",
                        {"environment": self.environment, "holder": current.to_dict(),
                         "reason": ErrorCode.LOCK_HELD},
                    )
                takeover = True
                logger.warning(
                    f"接管已过期的运行锁: {current.run_id} ({current.owner})，"
                    f"租约已于 {format_ts(current.lease_expires_at)} 过期"
                )
            info = self._write(run_id, now)
            confirmed = self.get()
        except ObjectStoreError as e:
            raise RunLockError(
                f"运行锁操作失败: {e.message}",
                {"environment": self.environment, "key": self.key, "error_type": e.error_type},
            ) from e

        if confirmed is None or confirmed.run_id != run_id:
            raise RunLockError(
                f"运行锁被并发运行抢占: {self.key}",
                {"environment": self.environment,
                 "holder": confirmed.to_dict() if confirmed else None,
                 "reason": ErrorCode.LOCK_HELD},
            )

        self.audit.write(
            AuditEvent(
                operation=OP_LOCK_TAKEOVER if takeover else OP_LOCK_ACQUIRE,
                success=True,
                environment=self.environment,
                run_id=run_id,
                key=self.key,
                reason=ErrorCode.LOCK_TAKEOVER if takeover else None,
                details={"owner": self.owner, "lease_expires_at": format_ts(info.lease_expires_at)},
            )
        )
        logger.info(f"获得运行锁 {self.key} (run_id={run_id})")
        return info

    def renew(self, run_id: str) -> LockInfo:
        """
        续租自己持有的锁（租约从现在起重新计算）

        Raises:
            RunLockError: 锁已不存在或已被其他运行接管
        """
        now = self._clock()
        try:
            current = self.get()
            if current is None or current.run_id != run_id:
                raise RunLockError(
                    f"运行锁已丢失，无法续租: {self.key}",
                    {"environment": self.environment,
                     "holder": current.to_dict() if current else None,
                     "reason": ErrorCode.LOCK_LOST},
                )
            info = self._write(run_id, now)
            confirmed = self.get()
        except ObjectStoreError as e:
            raise RunLockError(
                f"运行锁续租失败: {e.message}",
                {"environment": self.environment, "key": self.key, "error_type": e.error_type},
            ) from e
        if confirmed is None or confirmed.run_id != run_id:
            raise RunLockError(
                f"运行锁续租后被并发运行抢占: {self.key}",
                {"environment": self.environment,
                 "holder": confirmed.to_dict() if confirmed else None,
                 "reason": ErrorCode.LOCK_LOST},
            )
        logger.debug(f"续租运行锁 {self.key} 至 {format_ts(info.lease_expires_at)}")
        return info

    def release(self, run_id: str) -> bool:
        """释放自己持有的锁；锁已被他人接管时不做任何操作"""
        current = self.get()
        if current is None or current.run_id != run_id:
            logger.warning(f"运行锁不属于 {run_id}，跳过释放")
            return False
        self.store.delete(self.key)
        self.audit.write(
            AuditEvent(
                operation=OP_LOCK_RELEASE,
                success=True,
                environment=self.environment,
                run_id=run_id,
                key=self.key,
            )
        )
        logger.info(f"释放运行锁 {self.key}")
        return True

    def force_release(self) -> Optional[LockInfo]:
        """无条件删除锁，返回被删除的锁信息"""
        current = self.get()
        if current is None:
            return None
        self.store.delete(self.key)
        self.audit.write(
            AuditEvent(
                operation=OP_LOCK_FORCE_RELEASE,
                success=True,
                environment=self.environment,
                run_id=current.run_id or None,
                key=self.key,
                details={"holder": current.to_dict()},
            )
        )
        logger.warning(f"强制释放运行锁 {self.key}（原持有者 {current.run_id}）")
        return current
