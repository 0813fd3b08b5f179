"""
ludora_ops.reconcile.cli - 孤儿文件清理 CLI

子命令:
    run            执行对账（收集引用 -> 清点存储 -> 差异 -> 确认 -> 分批隔离）
    status         查看检查点、运行锁与校验缓存
    release-lock   强制释放运行锁（仅在确认没有运行中的进程时使用）

使用示例:
    ludora-reconcile run --env staging --dry-run
    ludora-reconcile run --env production --batch-size 50 --check-threshold 12h
    ludora-reconcile run --env production --resume --run-id 20250101T000000Z-a1b2c3 --force
    ludora-reconcile status --env production --pretty

退出码: 0 成功 / 1 致命错误 / 2 完成但存在对象级失败
stdout 只输出 JSON 报告，日志与确认提示输出到 stderr。
"""

import logging
import threading
from enum import Enum
from typing import Optional

import typer

from .audit import AuditTrail
from .check_cache import FileCheckCache
from .config import AppConfig, load_app_config, parse_duration, setup_logging
from .confirmation import ConfirmationGate, ForceGate, InteractiveGate
from .entity_source import EntitySource, PostgresEntitySource
from .errors import ReconcileError, make_success_result
from .io import output_error, output_json
from .object_store import ObjectStoreAdapter, create_object_store
from .orchestrator import ReconcileRun, RunContext, cancellation_on_signals
from .progress import ProgressTracker
from .retry import RetryPolicy
from .run_lock import RunLock
from .state import StateLayout

logger = logging.getLogger(__name__)


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


app = typer.Typer(
    name="ludora-reconcile",
    help="对象存储 / 数据库对账与孤儿文件清理",
    no_args_is_help=True,
    add_completion=False,
)


# ============ 组件构造（测试中可替换） ============


def build_entity_source(config: AppConfig) -> EntitySource:
    return PostgresEntitySource(config.postgres)


def build_object_store(config: AppConfig) -> ObjectStoreAdapter:
    return create_object_store(config.object_store, RetryPolicy.from_config(config.retry))


def build_gate(force: bool, audit: AuditTrail) -> ConfirmationGate:
    return ForceGate(audit) if force else InteractiveGate(audit)


def _load_config(config_path: Optional[str], verbose: bool) -> AppConfig:
    config = load_app_config(config_path)
    setup_logging(config.logging, verbose=verbose)
    return config


def _fail(error: ReconcileError, pretty: bool) -> None:
    output_error(error, pretty=pretty)
    raise typer.Exit(error.exit_code)


# ============ 命令 ============


@app.command("run")
def run_command(
    env: Environment = typer.Option(
        ..., "--env", "-e",
        help="目标环境",
    ),
    batch_size: Optional[int] = typer.Option(
        None, "--batch-size", "-b",
        help="每批隔离的对象数量（每批完成后写检查点）",
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", "-n",
        help="只报告，不修改存储",
    ),
    force: bool = typer.Option(
        False, "--force",
        help="跳过交互式确认（会单独记录审计事件）",
    ),
    resume: bool = typer.Option(
        False, "--resume",
        help="从检查点继续被中断的运行",
    ),
    run_id: Optional[str] = typer.Option(
        None, "--run-id",
        help="运行标识（配合 --resume 指定要恢复的运行）",
    ),
    check_threshold: Optional[str] = typer.Option(
        None, "--check-threshold",
        help="校验缓存有效期，如 24h / 90m / 2d",
    ),
    workers: Optional[int] = typer.Option(
        None, "--workers", "-w",
        help="对象存储并发数",
    ),
    timeout: Optional[str] = typer.Option(
        None, "--timeout",
        help="运行时限（到期后在批次边界停止），如 45m",
    ),
    config_path: Optional[str] = typer.Option(
        None, "--config", "-c",
        help="配置文件路径",
    ),
    pretty: bool = typer.Option(
        False, "--pretty", "-p",
        help="美化 JSON 输出",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="详细输出",
    ),
):
    """执行对账与孤儿文件隔离"""
    source: Optional[EntitySource] = None
    try:
        config = _load_config(config_path, verbose)
        ctx = RunContext.from_config(
            config,
            env.value,
            run_id=run_id,
            dry_run=dry_run,
            force=force,
            resume=resume,
            batch_size=batch_size,
            workers=workers,
            check_threshold=parse_duration(check_threshold, "check-threshold") if check_threshold else None,
            timeout_seconds=parse_duration(timeout, "timeout").total_seconds() if timeout else None,
        )
        store = build_object_store(config)
        source = build_entity_source(config)
        audit = AuditTrail(StateLayout(ctx.state_dir).audit_path(ctx.environment))

        with cancellation_on_signals(threading.Event()) as cancel_event:
            report = ReconcileRun(
                ctx,
                source,
                store,
                build_gate(force, audit),
                cancel_event=cancel_event,
                audit=audit,
            ).run()
    except ReconcileError as e:
        _fail(e, pretty)
    finally:
        if source is not None:
            source.close()

    output_json(report.to_dict(), pretty=pretty)
    raise typer.Exit(report.exit_code)


@app.command("status")
def status_command(
    env: Environment = typer.Option(..., "--env", "-e", help="目标环境"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="配置文件路径"),
    pretty: bool = typer.Option(False, "--pretty", "-p", help="美化 JSON 输出"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="详细输出"),
):
    """查看检查点、运行锁与校验缓存"""
    try:
        config = _load_config(config_path, verbose)
        settings = config.reconcile
        checkpoints = ProgressTracker(settings.state_dir, env.value).list()
        cache = FileCheckCache(
            settings.check_threshold, StateLayout(settings.state_dir).cache_path(env.value)
        ).load()
        lock = RunLock(build_object_store(config), env.value, settings.lock_lease).get()
    except ReconcileError as e:
        _fail(e, pretty)

    output_json(
        make_success_result(
            environment=env.value,
            checkpoints=[c.to_dict() for c in checkpoints],
            resumable=[c.run_id for c in checkpoints if c.is_resumable],
            lock=lock.to_dict() if lock else None,
            cache={"entries": len(cache), **cache.counts()},
        ),
        pretty=pretty,
    )


@app.command("release-lock")
def release_lock_command(
    env: Environment = typer.Option(..., "--env", "-e", help="目标环境"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="配置文件路径"),
    pretty: bool = typer.Option(False, "--pretty", "-p", help="美化 JSON 输出"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="详细输出"),
):
    """强制释放运行锁"""
    try:
        config = _load_config(config_path, verbose)
        settings = config.reconcile
        audit = AuditTrail(StateLayout(settings.state_dir).audit_path(env.value))
        released = RunLock(build_object_store(config), env.value, settings.lock_lease, audit=audit).force_release()
    except ReconcileError as e:
        _fail(e, pretty)

    if released is None:
        logger.info(f"环境 {env.value} 当前没有运行锁")
    output_json(
        make_success_result(environment=env.value, released=released.to_dict() if released else None),
        pretty=pretty,
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
