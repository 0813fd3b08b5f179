"""
ludora_ops.reconcile.progress - 进度检查点

每个 (environment, run_id) 一个检查点文件，每完成一个批次写入一次。
写入采用"写新文件再 rename"，任意时刻崩溃都只会看到旧版本或新版本。

检查点写入失败是系统级错误: 继续运行会导致进度无法恢复，必须立即停止。
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

from .errors import CheckpointCorruptError, CheckpointPersistError, ErrorCode
from .models import ProgressCheckpoint, utcnow
from .state import StateLayout, atomic_write_json, read_json

logger = logging.getLogger(__name__)


class ProgressTracker:
    """检查点读写（按环境隔离）"""

    def __init__(self, state_dir: Union[str, Path], environment: str):
        self.layout = StateLayout(state_dir)
        self.environment = environment

    def path_for(self, run_id: str) -> Path:
        return self.layout.checkpoint_path(self.environment, run_id)

    def load(self, run_id: str) -> Optional[ProgressCheckpoint]:
        """
        Raises:
            CheckpointCorruptError: 文件存在但无法解析，或环境不一致
        """
        path = self.path_for(run_id)
        data = read_json(path)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise CheckpointCorruptError(f"检查点格式无效: {path}", {"path": str(path)})
        checkpoint = ProgressCheckpoint.from_dict(data)
        if checkpoint.environment != self.environment or checkpoint.run_id != run_id:
            raise CheckpointCorruptError(
                f"检查点与请求不一致: {path}",
                {
                    "path": str(path),
                    "expected": {"environment": self.environment, "run_id": run_id},
                    "actual": {"environment": checkpoint.environment, "run_id": checkpoint.run_id},
                    "reason": ErrorCode.CHECKPOINT_CORRUPT,
                },
            )
        return checkpoint

    def save(self, checkpoint: ProgressCheckpoint) -> None:
        """
        Raises:
            CheckpointPersistError: 写入失败
        """
        checkpoint.updated_at = utcnow()
        path = self.path_for(checkpoint.run_id)
        try:
            atomic_write_json(path, checkpoint.to_dict())
        except OSError as e:
            raise CheckpointPersistError(
                f"检查点写入失败: {path}",
                {"path": str(path), "run_id": checkpoint.run_id, "error": str(e),
                 "reason": ErrorCode.CHECKPOINT_PERSIST_FAILED},
            ) from e
        logger.debug(
            f"检查点已保存: run_id={checkpoint.run_id} cursor={checkpoint.cursor} "
            f"batches={checkpoint.batches_completed}"
        )

    def list(self) -> List[ProgressCheckpoint]:
        """列出该环境的全部检查点（按更新时间倒序），损坏的文件记录警告后跳过"""
        directory = self.layout.checkpoint_dir(self.environment)
        if not directory.exists():
            return []
        checkpoints = []
        for path in directory.glob("*.json"):
            if path.name.startswith("."):
                continue
            try:
                checkpoint = self.load(path.stem)
            except CheckpointCorruptError as e:
                logger.warning(f"忽略损坏的检查点: {e.message}")
                continue
            if checkpoint is not None:
                checkpoints.append(checkpoint)
        checkpoints.sort(key=lambda c: c.updated_at, reverse=True)
        return checkpoints

    def latest_resumable(self) -> Optional[ProgressCheckpoint]:
        for checkpoint in self.list():
            if checkpoint.is_resumable:
                return checkpoint
        return None
