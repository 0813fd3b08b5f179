"""
ludora_ops.reconcile.orchestrator - 对账运行编排

状态机:
    INIT ─(--resume 且存在检查点)→ RESUMABLE ─┐
      └──────────────────────────────────────┴→ COLLECTING_REFERENCES → ANALYZING_STORE → DIFFING
    DIFFING → COMPLETE                        （无待隔离对象，或 dry-run）
    DIFFING → CONFIRMING → COMPLETE           （确认被拒绝，零修改）
    CONFIRMING → QUARANTINING ⇄ CHECKPOINTING → COMPLETE
    QUARANTINING / CHECKPOINTING → RESUMABLE  （收到取消信号或超时，已完成批次均已写检查点）
    任意非终止状态 → FAILED                    （系统级错误）

恢复运行会重新执行只读的收集 / 清点 / 差异阶段（这些阶段不持久化任何中间结果），
然后跳过检查点 cursor 已覆盖的孤儿，从下一个批次编号继续。

运行参数全部由不可变的 RunContext 传入，编排器不读取任何全局状态。
"""

import logging
import secrets
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .audit import OP_RUN_SUMMARY, AuditEvent, AuditTrail
from .check_cache import FileCheckCache
from .collector import ReferenceCollector
from .config import VALID_ENVIRONMENTS, AppConfig
from .confirmation import ConfirmationGate, ConfirmationSummary
from .entity_source import EntitySource
from .errors import (
    CheckpointPersistError,
    ConfigError,
    ExitCode,
    InvalidTransitionError,
    ObjectStoreError,
    ReconcileError,
    RunLockError,
)
from .inventory import ObjectInventoryAnalyzer
from .keys import normalize_key
from .models import (
    CHECKPOINT_STATUS_COMPLETE,
    CacheStatus,
    ObjectRecord,
    ProgressCheckpoint,
    RunState,
    format_ts,
    utcnow,
)
from .object_store import ObjectStoreAdapter
from .progress import ProgressTracker
from .quarantine import QuarantineManager
from .reconciler import diff
from .registry import DEFAULT_ENTITY_SPECS
from .run_lock import RunLock
from .state import StateLayout
from .strategies import EntityTypeSpec

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[RunState, Tuple[RunState, ...]] = {
    RunState.INIT: (RunState.RESUMABLE, RunState.COLLECTING_REFERENCES, RunState.COMPLETE, RunState.FAILED),
    RunState.RESUMABLE: (RunState.COLLECTING_REFERENCES, RunState.FAILED),
    RunState.COLLECTING_REFERENCES: (RunState.ANALYZING_STORE, RunState.FAILED),
    RunState.ANALYZING_STORE: (RunState.DIFFING, RunState.FAILED),
    RunState.DIFFING: (RunState.CONFIRMING, RunState.COMPLETE, RunState.FAILED),
    RunState.CONFIRMING: (RunState.QUARANTINING, RunState.COMPLETE, RunState.FAILED),
    RunState.QUARANTINING: (RunState.CHECKPOINTING, RunState.COMPLETE, RunState.RESUMABLE, RunState.FAILED),
    RunState.CHECKPOINTING: (RunState.QUARANTINING, RunState.COMPLETE, RunState.RESUMABLE, RunState.FAILED),
    RunState.COMPLETE: (),
    RunState.FAILED: (),
}


def generate_run_id(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"{now:%Y%m%dT%H%M%SZ}-{secrets.token_hex(3)}"


def batch_id_for(run_id: str, index: int) -> str:
    return f"{run_id}-b{index:05d}"


def chunked(items: Sequence[ObjectRecord], size: int) -> List[List[ObjectRecord]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


@dataclass(frozen=True)
class RunContext:
    """一次运行的全部参数（不可变）"""

    environment: str
    run_id: str
    dry_run: bool = False
    force: bool = False
    resume: bool = False
    batch_size: int = 100
    workers: int = 8
    check_threshold: timedelta = timedelta(hours=24)
    quarantine_ttl: timedelta = timedelta(days=30)
    lock_lease: timedelta = timedelta(hours=2)
    state_dir: Path = Path(".ludora/reconcile-state")
    sample_size: int = 10
    own_url_prefixes: Tuple[str, ...] = ()
    # 协作式超时（秒），到期后在批次边界停止
    timeout_seconds: Optional[float] = None
    # 是否显式指定了 run_id（用于 --resume 定位检查点）
    explicit_run_id: bool = False

    def __post_init__(self):
        if self.environment not in VALID_ENVIRONMENTS:
            raise ConfigError(
                f"无效的环境: {self.environment}，有效值: {', '.join(VALID_ENVIRONMENTS)}",
                {"key": "env", "value": self.environment},
            )
        if self.batch_size <= 0:
            raise ConfigError(f"batch_size 必须为正数: {self.batch_size}", {"key": "batch_size"})
        if self.workers <= 0:
            raise ConfigError(f"workers 必须为正数: {self.workers}", {"key": "workers"})
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ConfigError(f"timeout 必须为正数: {self.timeout_seconds}", {"key": "timeout"})

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        environment: str,
        run_id: Optional[str] = None,
        dry_run: bool = False,
        force: bool = False,
        resume: bool = False,
        batch_size: Optional[int] = None,
        workers: Optional[int] = None,
        check_threshold: Optional[timedelta] = None,
        timeout_seconds: Optional[float] = None,
    ) -> "RunContext":
        """配置文件给出默认值，CLI 参数覆盖"""
        settings = config.reconcile
        return cls(
            environment=environment,
            run_id=run_id or generate_run_id(),
            dry_run=dry_run,
            force=force,
            resume=resume,
            batch_size=batch_size or settings.batch_size,
            workers=workers or settings.workers,
            check_threshold=check_threshold if check_threshold is not None else settings.check_threshold,
            quarantine_ttl=settings.quarantine_ttl,
            lock_lease=settings.lock_lease,
            state_dir=Path(settings.state_dir),
            sample_size=settings.sample_size,
            own_url_prefixes=tuple(config.object_store.own_url_prefixes),
            timeout_seconds=timeout_seconds,
            explicit_run_id=run_id is not None,
        )


@dataclass
class RunReport:
    """最终报告（stdout JSON）"""

    run_id: str
    environment: str
    dry_run: bool
    state: RunState = RunState.INIT
    resumed: bool = False
    declined: bool = False
    interrupted: bool = False
    counts: Dict[str, int] = field(
        default_factory=lambda: {
            "references": 0,
            "objects": 0,
            "matched": 0,
            "matched_keys": 0,
            "orphans": 0,
            "missing": 0,
            "quarantined": 0,
            "skipped_cached": 0,
            "failed": 0,
            "collection_errors": 0,
            "duplicate_references": 0,
            "superseded_legacy": 0,
            "data_quality_warnings": 0,
            "planned_batches": 0,
            "resumed_skipped": 0,
        }
    )
    sample_orphans: List[str] = field(default_factory=list)
    sample_missing: List[str] = field(default_factory=list)
    # dry-run: 计划中的隔离位置样例
    sample_planned: List[Dict[str, str]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    exit_code: int = ExitCode.SUCCESS

    @property
    def ok(self) -> bool:
        return self.exit_code == ExitCode.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "run_id": self.run_id,
            "environment": self.environment,
            "state": self.state.value,
            "dry_run": self.dry_run,
            "resumed": self.resumed,
            "declined": self.declined,
            "interrupted": self.interrupted,
            "counts": dict(self.counts),
            "sample_orphans": list(self.sample_orphans),
            "sample_missing": list(self.sample_missing),
            "sample_planned": list(self.sample_planned),
            "errors": list(self.errors),
            "exit_code": self.exit_code,
        }


@contextmanager
def cancellation_on_signals(event: threading.Event) -> Iterator[threading.Event]:
    """SIGINT / SIGTERM 只设置取消标志，由编排器在批次边界停止"""
    if threading.current_thread() is not threading.main_thread():
        yield event
        return

    def _handler(signum, frame):
        logger.warning(f"收到信号 {signal.Signals(signum).name}，当前批次完成后停止")
        event.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield event
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


class ReconcileRun:
    """
    一次对账运行

    用法:
        ctx = RunContext.from_config(app_config, "production", dry_run=True)
        report = ReconcileRun(ctx, source, store, gate).run()
    """

    def __init__(
        self,
        ctx: RunContext,
        source: EntitySource,
        store: ObjectStoreAdapter,
        gate: ConfirmationGate,
        entity_specs: Sequence[EntityTypeSpec] = DEFAULT_ENTITY_SPECS,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = utcnow,
        audit: Optional[AuditTrail] = None,
    ):
        self.ctx = ctx
        self.store = store
        self.gate = gate
        self.cancel_event = cancel_event or threading.Event()
        self._clock = clock
        layout = StateLayout(ctx.state_dir)
        self.audit = audit or AuditTrail(layout.audit_path(ctx.environment))
        self.collector = ReferenceCollector(source, entity_specs, ctx.own_url_prefixes)
        self.analyzer = ObjectInventoryAnalyzer(store, workers=ctx.workers)
        self.cache = FileCheckCache(ctx.check_threshold, layout.cache_path(ctx.environment), clock=clock).load()
        self.tracker = ProgressTracker(ctx.state_dir, ctx.environment)
        self.state = RunState.INIT
        self.history: List[RunState] = [RunState.INIT]
        self._deadline: Optional[datetime] = None

    def _transition(self, new_state: RunState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"非法的状态迁移: {self.state.value} -> {new_state.value}",
                {"from": self.state.value, "to": new_state.value},
            )
        logger.debug(f"状态: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def _cancelled(self) -> bool:
        if self.cancel_event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            logger.warning("已到达运行时限，当前批次完成后停止")
            self.cancel_event.set()
            return True
        return False

    def _load_checkpoint(self) -> Optional[ProgressCheckpoint]:
        ctx = self.ctx
        if ctx.explicit_run_id:
            checkpoint = self.tracker.load(ctx.run_id)
        else:
            checkpoint = self.tracker.latest_resumable()
        if checkpoint is None:
            logger.info(f"环境 {ctx.environment} 没有可恢复的检查点，开始新的运行")
        return checkpoint

    # ---- 主流程 ----

    def run(self) -> RunReport:
        ctx = self.ctx
        report = RunReport(run_id=ctx.run_id, environment=ctx.environment, dry_run=ctx.dry_run)
        if ctx.timeout_seconds is not None:
            self._deadline = self._clock() + timedelta(seconds=ctx.timeout_seconds)
        try:
            self._run(report)
        except ReconcileError as e:
            logger.error(f"运行失败（阶段 {self.state.value}）: [{e.error_type}] {e.message}")
            error = e.to_dict()
            error["phase"] = self.state.value
            report.errors.append(error)
            if self.state not in (RunState.COMPLETE, RunState.FAILED):
                self._transition(RunState.FAILED)
            report.exit_code = e.exit_code
        report.state = self.state
        self._write_summary(report)
        return report

    def _run(self, report: RunReport) -> None:
        ctx = self.ctx
        checkpoint: Optional[ProgressCheckpoint] = None

        if ctx.resume:
            checkpoint = self._load_checkpoint()
            if checkpoint is not None:
                if not checkpoint.is_resumable:
                    logger.info(f"运行 {checkpoint.run_id} 已完成，无需恢复")
                    report.run_id = checkpoint.run_id
                    self._apply_totals(report, checkpoint)
                    self._transition(RunState.COMPLETE)
                    return
                report.run_id = checkpoint.run_id
                report.resumed = True
                self._transition(RunState.RESUMABLE)
                logger.info(
                    f"恢复运行 {checkpoint.run_id}: cursor={checkpoint.cursor} "
                    f"已完成批次 {checkpoint.batches_completed}"
                )
        elif ctx.explicit_run_id and self.tracker.load(ctx.run_id) is not None:
            raise ConfigError(
                f"run_id {ctx.run_id} 已存在检查点，如需继续请使用 --resume",
                {"key": "run_id", "value": ctx.run_id},
            )
        run_id = report.run_id

        self._transition(RunState.COLLECTING_REFERENCES)
        references = list(self.collector.collect(ctx.environment))
        stats = self.collector.stats
        report.counts["collection_errors"] = stats.collection_errors
        report.counts["data_quality_warnings"] = stats.data_quality_warnings
        report.counts["superseded_legacy"] = stats.superseded_legacy

        self._transition(RunState.ANALYZING_STORE)
        objects = self.analyzer.analyze(ctx.environment)

        self._transition(RunState.DIFFING)
        result = diff(references, objects)
        report.counts.update(
            references=result.expected_count,
            objects=result.actual_count,
            matched=result.matched_count,
            matched_keys=result.matched_keys,
            orphans=len(result.orphans),
            missing=len(result.missing),
            duplicate_references=result.duplicate_references,
        )
        report.sample_orphans = [o.key for o in result.orphans[: ctx.sample_size]]
        report.sample_missing = [r.expected_key for r in result.missing[: ctx.sample_size]]

        candidates, skipped_keys = self._apply_cache(result.orphans, objects, report)

        # 被检查点覆盖的 key 已在之前的运行中计入 totals
        pending_skipped = sorted(skipped_keys)
        if checkpoint is not None:
            remaining = [o for o in candidates if not checkpoint.covers(o.key)]
            report.counts["resumed_skipped"] = len(candidates) - len(remaining)
            candidates = remaining
            pending_skipped = [key for key in pending_skipped if not checkpoint.covers(key)]

        batches = chunked(candidates, ctx.batch_size)
        report.counts["planned_batches"] = len(batches)

        if not candidates:
            logger.info("没有需要隔离的对象")
            if checkpoint is not None:
                checkpoint.status = CHECKPOINT_STATUS_COMPLETE
                checkpoint.totals.skipped += len(pending_skipped)
                self.tracker.save(checkpoint)
                self._apply_totals(report, checkpoint)
            self._transition(RunState.COMPLETE)
            return

        if ctx.dry_run:
            manager = self._quarantine_manager(run_id)
            offset = checkpoint.batches_completed if checkpoint is not None else 0
            for index, batch in enumerate(batches, start=offset):
                planned = manager.quarantine(batch, dry_run=True, batch_id=batch_id_for(run_id, index))
                for entry in planned.entries:
                    if len(report.sample_planned) >= ctx.sample_size:
                        break
                    report.sample_planned.append(
                        {"original_key": entry.original_key, "quarantine_key": entry.quarantine_key}
                    )
            logger.info(
                f"dry-run: 计划隔离 {len(candidates)} 个对象，{len(batches)} 个批次，不修改存储"
            )
            self._transition(RunState.COMPLETE)
            return

        self._transition(RunState.CONFIRMING)
        summary = ConfirmationSummary(
            environment=ctx.environment,
            run_id=run_id,
            orphan_count=len(candidates),
            total_bytes=sum(o.size_bytes for o in candidates),
            batch_count=len(batches),
            sample_keys=[o.key for o in candidates[: ctx.sample_size]],
            resumed=report.resumed,
        )
        if not self.gate.confirm(summary):
            logger.info("确认被拒绝，未做任何修改")
            report.declined = True
            self._transition(RunState.COMPLETE)
            return

        lock = RunLock(self.store, ctx.environment, ctx.lock_lease, audit=self.audit, clock=self._clock)
        lock.acquire(run_id)
        try:
            self._quarantine_batches(run_id, batches, checkpoint, report, lock, pending_skipped)
        finally:
            try:
                lock.release(run_id)
            except ObjectStoreError as e:
                logger.warning(f"运行锁释放失败，租约到期后可被接管: {e.message}")

    def _quarantine_manager(self, run_id: str) -> QuarantineManager:
        ctx = self.ctx
        return QuarantineManager(
            self.store,
            ctx.environment,
            run_id,
            ctx.state_dir,
            ctx.quarantine_ttl,
            workers=ctx.workers,
            audit=self.audit,
            clock=self._clock,
        )

    def _apply_cache(
        self, orphans: Sequence[ObjectRecord], objects: Sequence[ObjectRecord], report: RunReport
    ) -> Tuple[List[ObjectRecord], List[str]]:
        """
        过滤近期确认为 matched 的孤儿候选，并更新缓存

        被跳过的候选保持原缓存条目不变，过期后重新参与判定。
        返回 (待隔离候选, 被跳过的 key)。
        """
        candidates: List[ObjectRecord] = []
        skipped: List[str] = []
        orphan_norms = set()
        for orphan in orphans:
            orphan_norms.add(normalize_key(orphan.key))
            if self.cache.should_skip(orphan.key):
                skipped.append(orphan.key)
                logger.info(f"近期校验为 matched，本次跳过: {orphan.key}")
                continue
            candidates.append(orphan)
            self.cache.record(orphan.key, CacheStatus.ORPHAN_CONFIRMED)
        for obj in objects:
            if normalize_key(obj.key) not in orphan_norms:
                self.cache.record(obj.key, CacheStatus.MATCHED)
        report.counts["skipped_cached"] = len(skipped)
        try:
            self.cache.save()
        except CheckpointPersistError as e:
            logger.warning(f"校验缓存未保存（不影响本次结果）: {e.message}")
        return candidates, skipped

    def _quarantine_batches(
        self,
        run_id: str,
        batches: List[List[ObjectRecord]],
        checkpoint: Optional[ProgressCheckpoint],
        report: RunReport,
        lock: RunLock,
        pending_skipped: List[str],
    ) -> None:
        """
        逐批隔离并推进检查点

        缓存跳过的 key 在游标越过它时计入 totals.skipped，
        因此中断后恢复的累计值与一次性完成相同。
        """
        ctx = self.ctx
        if checkpoint is None:
            checkpoint = ProgressCheckpoint(run_id=run_id, environment=ctx.environment)
        pending = list(pending_skipped)
        self.tracker.save(checkpoint)

        manager = self._quarantine_manager(run_id)

        self._transition(RunState.QUARANTINING)
        for position, batch in enumerate(batches, start=1):
            if self._cancelled():
                report.interrupted = True
                break
            batch_id = batch_id_for(run_id, checkpoint.batches_completed)
            result = manager.quarantine(batch, dry_run=False, batch_id=batch_id)

            self._transition(RunState.CHECKPOINTING)
            checkpoint.cursor = batch[-1].key
            checkpoint.batches_completed += 1
            checkpoint.totals.processed += len(batch)
            checkpoint.totals.quarantined += len(result.entries)
            checkpoint.totals.failed += len(result.failures)
            covered = [key for key in pending if checkpoint.covers(key)]
            checkpoint.totals.skipped += len(covered)
            pending = pending[len(covered):]
            self.tracker.save(checkpoint)
            report.errors.extend(dict(f.to_dict(), batch_id=batch_id) for f in result.failures)
            if position < len(batches):
                try:
                    lock.renew(run_id)
                except RunLockError as e:
                    logger.error(f"运行锁续租失败，停止隔离: {e.message}")
                    report.errors.append(dict(e.to_dict(), batch_id=batch_id))
                    report.interrupted = True
                    break
            self._transition(RunState.QUARANTINING)

        self._apply_totals(report, checkpoint)
        if report.interrupted:
            logger.warning(
                f"运行中断，可使用 --resume --run-id {run_id} 继续 "
                f"(cursor={checkpoint.cursor})"
            )
            self._transition(RunState.RESUMABLE)
            report.exit_code = ExitCode.FATAL
            return

        checkpoint.totals.skipped += len(pending)
        checkpoint.status = CHECKPOINT_STATUS_COMPLETE
        self.tracker.save(checkpoint)
        self._transition(RunState.COMPLETE)
        if checkpoint.totals.failed:
            report.exit_code = ExitCode.PARTIAL_FAILURE

    @staticmethod
    def _apply_totals(report: RunReport, checkpoint: ProgressCheckpoint) -> None:
        report.counts["quarantined"] = checkpoint.totals.quarantined
        report.counts["failed"] = checkpoint.totals.failed

    def _write_summary(self, report: RunReport) -> None:
        self.audit.write(
            AuditEvent(
                operation=OP_RUN_SUMMARY,
                success=report.state == RunState.COMPLETE and report.exit_code != ExitCode.FATAL,
                environment=report.environment,
                run_id=report.run_id,
                details={
                    "state": report.state.value,
                    "dry_run": report.dry_run,
                    "resumed": report.resumed,
                    "declined": report.declined,
                    "counts": dict(report.counts),
                    "finished_at": format_ts(self._clock()),
                },
            )
        )
        counts = report.counts
        logger.info(
            f"运行结束 [{report.state.value}] matched={counts['matched']} "
            f"quarantined={counts['quarantined']} skipped_cached={counts['skipped_cached']} "
            f"failed={counts['failed']} missing={counts['missing']}"
        )
