"""
ludora_ops.reconcile.io - CLI 输出

约定:
- stdout: 机器可读的 JSON 报告（每次命令输出一个 JSON 对象）
- stderr: 人读信息（日志、确认提示）
- 成功: {ok: true, ...}
- 失败: {ok: false, code, message, detail}
"""

import json
import sys
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import ReconcileError
from .models import format_ts


def output_json(data: Any, pretty: bool = False) -> None:
    """输出 JSON 到 stdout"""
    indent = 2 if pretty else None
    print(json.dumps(data, ensure_ascii=False, indent=indent, default=_json_serializer), file=sys.stdout)


def output_error(error: ReconcileError, pretty: bool = False) -> None:
    """错误以 JSON 输出到 stdout，并在 stderr 给出人读信息"""
    payload = error.to_dict()
    payload["exit_code"] = error.exit_code
    output_json(payload, pretty=pretty)
    log_error(f"[{error.error_type}] {error.message}")


def log_error(message: str) -> None:
    print(f"ERROR: {message}", file=sys.stderr)


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return format_ts(obj)
    if isinstance(obj, timedelta):
        return obj.total_seconds()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
