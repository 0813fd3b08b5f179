"""
ludora_ops.reconcile.state - 本地状态目录与原子写入

目录结构（{state_dir}）:
    checkpoints/{env}/{run_id}.json     运行检查点
    cache/{env}.json                    校验缓存
    quarantine/{env}/{batch_id}.json    隔离台账
    audit/{env}.jsonl                   审计事件（追加写）

所有 JSON 写入都是原子的: 同目录临时文件 .{name}.{pid}.{hex}.tmp + os.replace，
崩溃时不会留下半写的文件。
"""

import json
import os
import secrets
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .errors import CheckpointCorruptError


def _temp_path_for(target: Path) -> Path:
    """生成同目录临时文件名（包含 pid + 随机数）"""
    return target.parent / f".{target.name}.{os.getpid()}.{secrets.token_hex(8)}.tmp"


def atomic_write_bytes(path: Union[str, Path], data: bytes) -> None:
    """
    原子写入文件

    Raises:
        OSError: 写入或 rename 失败（调用方负责转换为领域错误）
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path: Optional[Path] = _temp_path_for(target)
    try:
        with open(temp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, target)
        temp_path = None
    finally:
        if temp_path is not None and temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass


def atomic_write_json(path: Union[str, Path], data: Any) -> None:
    payload = json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True)
    atomic_write_bytes(path, payload.encode("utf-8"))


def read_json(path: Union[str, Path]) -> Optional[Any]:
    """
    读取 JSON 文件；文件不存在返回 None

    Raises:
        CheckpointCorruptError: 文件存在但无法解析
    """
    target = Path(path)
    if not target.exists():
        return None
    try:
        with open(target, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise CheckpointCorruptError(
            f"状态文件损坏: {target}",
            {"path": str(target), "error": str(e)},
        ) from e


def append_jsonl(path: Union[str, Path], record: Dict[str, Any]) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False, sort_keys=True) + "\n")


class StateLayout:
    """state_dir 下各类文件的路径约定"""

    def __init__(self, state_dir: Union[str, Path]):
        self.root = Path(state_dir)

    def checkpoint_dir(self, environment: str) -> Path:
        return self.root / "checkpoints" / environment

    def checkpoint_path(self, environment: str, run_id: str) -> Path:
        return self.checkpoint_dir(environment) / f"{run_id}.json"

    def cache_path(self, environment: str) -> Path:
        return self.root / "cache" / f"{environment}.json"

    def quarantine_dir(self, environment: str) -> Path:
        return self.root / "quarantine" / environment

    def quarantine_ledger_path(self, environment: str, batch_id: str) -> Path:
        return self.quarantine_dir(environment) / f"{batch_id}.json"

    def audit_path(self, environment: str) -> Path:
        return self.root / "audit" / f"{environment}.jsonl"
