"""
ludora_ops.reconcile.confirmation - 破坏性操作确认

ConfirmationGate.confirm(summary) -> bool

    InteractiveGate  展示计数与样例 key，等待用户确认；非交互终端直接拒绝
    ForceGate        --force: 不阻塞，直接放行

两种方式写入不同的审计事件（confirmation.interactive / confirmation.forced）。
"""

import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import typer

from .audit import OP_CONFIRM_FORCED, OP_CONFIRM_INTERACTIVE, AuditEvent, AuditTrail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmationSummary:
    environment: str
    run_id: str
    orphan_count: int
    total_bytes: int
    batch_count: int
    sample_keys: List[str] = field(default_factory=list)
    resumed: bool = False

    def to_dict(self):
        return {
            "environment": self.environment,
            "run_id": self.run_id,
            "orphan_count": self.orphan_count,
            "total_bytes": self.total_bytes,
            "batch_count": self.batch_count,
            "sample_keys": list(self.sample_keys),
            "resumed": self.resumed,
        }


class ConfirmationGate(ABC):
    def __init__(self, audit: Optional[AuditTrail] = None):
        self.audit = audit or AuditTrail()

    @abstractmethod
    def confirm(self, summary: ConfirmationSummary) -> bool:
        ...


class ForceGate(ConfirmationGate):
    def confirm(self, summary: ConfirmationSummary) -> bool:
        logger.warning(
            f"--force: 跳过确认，将隔离 {summary.orphan_count} 个孤儿对象 (env={summary.environment})"
        )
        self.audit.write(
            AuditEvent(
                operation=OP_CONFIRM_FORCED,
                success=True,
                environment=summary.environment,
                run_id=summary.run_id,
                details=summary.to_dict(),
            )
        )
        return True


def _format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} TB"


class InteractiveGate(ConfirmationGate):
    """
    交互式确认

    提示输出到 stderr（stdout 保留给 JSON 报告）。
    prompt / is_tty 可注入以便测试。
    """

    def __init__(
        self,
        audit: Optional[AuditTrail] = None,
        prompt: Optional[Callable[[str], bool]] = None,
        is_tty: Optional[Callable[[], bool]] = None,
    ):
        super().__init__(audit)
        self._prompt = prompt or (lambda text: typer.confirm(text, default=False, err=True))
        self._is_tty = is_tty or (lambda: sys.stdin.isatty())

    def render(self, summary: ConfirmationSummary) -> str:
        lines = [
            f"环境: {summary.environment}    run_id: {summary.run_id}"
            + ("（恢复运行）" if summary.resumed else ""),
            f"待隔离孤儿对象: {summary.orphan_count} 个，共 {_format_bytes(summary.total_bytes)}，"
            f"{summary.batch_count} 个批次",
        ]
        if summary.sample_keys:
            lines.append("样例:")
            lines.extend(f"  - {key}" for key in summary.sample_keys)
            if summary.orphan_count > len(summary.sample_keys):
                lines.append(f"  ... 以及另外 {summary.orphan_count - len(summary.sample_keys)} 个")
        return "\n".join(lines)

    def confirm(self, summary: ConfirmationSummary) -> bool:
        if not self._is_tty():
            logger.error("非交互终端无法确认，请使用 --force 或 --dry-run")
            accepted = False
        else:
            typer.echo(self.render(summary), err=True)
            accepted = bool(self._prompt("确认将以上对象移入隔离区？"))
        self.audit.write(
            AuditEvent(
                operation=OP_CONFIRM_INTERACTIVE,
                success=accepted,
                environment=summary.environment,
                run_id=summary.run_id,
                details=dict(summary.to_dict(), accepted=accepted),
            )
        )
        return accepted
