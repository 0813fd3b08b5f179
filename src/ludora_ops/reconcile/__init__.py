"""
ludora_ops.reconcile - 对象存储 / 数据库对账与孤儿文件清理

约定:
- CLI 输出为结构化 JSON（stdout），日志与提示输出到 stderr
- 退出码: 0 成功 / 1 致命错误 / 2 完成但存在对象级失败
- 支持 --config 参数和 LUDORA_RECONCILE_CONFIG 环境变量配置

模块:
- config: 配置管理与日志初始化
- errors: 错误定义
- keys: 对象 key 构造与规范化
- strategies / registry: 引用提取策略与实体登记表
- entity_source: 关系库只读访问
- object_store: 对象存储适配层（S3 / 本地目录）
- collector / inventory / reconciler: 收集、清点、差异
- check_cache / progress / quarantine / run_lock: 缓存、检查点、隔离、运行锁
- confirmation: 破坏性操作确认
- orchestrator: 运行状态机
- cli: 命令行入口
"""

__version__ = "0.1.0"

from .errors import (
    CheckpointPersistError,
    CollectionError,
    DiffInconsistencyWarning,
    ExitCode,
    QuarantineMoveError,
    ReconcileError,
    StoreAnalysisError,
)
from .models import (
    CacheEntry,
    FileReference,
    ObjectRecord,
    ProgressCheckpoint,
    QuarantineEntry,
    ReconciliationResult,
    RunState,
    SourceKind,
)
from .orchestrator import ReconcileRun, RunContext, RunReport
from .reconciler import diff

__all__ = [
    "CacheEntry",
    "CheckpointPersistError",
    "CollectionError",
    "DiffInconsistencyWarning",
    "ExitCode",
    "FileReference",
    "ObjectRecord",
    "ProgressCheckpoint",
    "QuarantineEntry",
    "QuarantineMoveError",
    "ReconcileError",
    "ReconcileRun",
    "ReconciliationResult",
    "RunContext",
    "RunReport",
    "RunState",
    "SourceKind",
    "StoreAnalysisError",
    "diff",
]
