"""
ludora_ops.reconcile.errors - 错误定义模块

定义对账/孤儿文件清理工具可能抛出的异常类型，统一错误码和错误消息格式。

退出码约定:
    0   - 成功（包括"无需处理"）
    1   - 致命错误（引用收集失败、存储清点失败、检查点损坏/写入失败、运行锁冲突）
    2   - 运行完成，但存在对象级失败（部分隔离操作失败，已记录）

错误分级:
    - 记录级 (CollectionError): 单条引用数据异常，跳过并计数，仅在汇总报告中体现
    - 系统级 (StoreAnalysisError / CheckpointPersistError): 立即中止运行
    - 对象级 (QuarantineMoveError): 单个对象复制/校验/删除失败，不阻塞批次
    - 提示级 (DiffInconsistencyWarning): 多个引用源指向同一 key，仅作信息记录

错误码规范 (用于审计事件 reason 字段):
    格式: <domain>_<action>:<detail>
    示例:
    - quarantine_move_failed:verify_mismatch
    - checkpoint_persist_failed:os_error
"""

from typing import Any, Dict, Optional

# =============================================================================
# 错误码常量（用于审计事件 reason 字段归一化）
# =============================================================================


class ErrorCode:
    """
    统一错误码常量，用于审计事件的 reason 字段。

    命名规范:
    - 前缀表示来源/领域: COLLECT_, ANALYZE_, QUARANTINE_, CHECKPOINT_, LOCK_
    - 使用冒号分隔领域和具体错误码
    """

    # 引用收集
    COLLECT_RECORD_MALFORMED = "collect_record:malformed"
    COLLECT_OWNER_NOT_FOUND = "collect_record:owner_not_found"
    COLLECT_FLAG_WITHOUT_FILENAME = "collect_data_quality:flag_without_filename"
    COLLECT_PLACEHOLDER_URL = "collect_data_quality:placeholder_url"

    # 存储清点
    ANALYZE_LIST_FAILED = "analyze_list_failed:retries_exhausted"

    # 隔离
    QUARANTINE_COPY_FAILED = "quarantine_move_failed:copy_error"
    QUARANTINE_VERIFY_MISMATCH = "quarantine_move_failed:verify_mismatch"
    QUARANTINE_VERIFY_MISSING = "quarantine_move_failed:verify_missing"
    QUARANTINE_DELETE_FAILED = "quarantine_move_failed:delete_error"
    QUARANTINE_SOURCE_GONE = "quarantine_move_failed:source_gone"

    # 检查点
    CHECKPOINT_PERSIST_FAILED = "checkpoint_persist_failed:os_error"
    CHECKPOINT_CORRUPT = "checkpoint_load_failed:corrupt"

    # 运行锁
    LOCK_HELD = "run_lock:held_by_other"
    LOCK_TAKEOVER = "run_lock:expired_takeover"
    LOCK_LOST = "run_lock:lost"


# =============================================================================
# 退出码
# =============================================================================


class ExitCode:
    """退出码常量"""

    SUCCESS = 0
    FATAL = 1
    PARTIAL_FAILURE = 2


# =============================================================================
# 基础异常类
# =============================================================================


class ReconcileError(Exception):
    """ludora_ops.reconcile 基础异常类"""

    exit_code: int = ExitCode.FATAL
    error_type: str = "RECONCILE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        转换为可序列化的字典格式

        格式: {ok: false, code: str, message: str, detail: dict}
        """
        return {
            "ok": False,
            "code": self.error_type,
            "message": self.message,
            "detail": self.details,
        }


# =============================================================================
# 配置错误
# =============================================================================


class ConfigError(ReconcileError):
    """配置相关错误"""

    error_type = "CONFIG_ERROR"


class ConfigNotFoundError(ConfigError):
    """显式指定的配置文件未找到"""

    error_type = "CONFIG_NOT_FOUND"


class ConfigParseError(ConfigError):
    """配置文件解析错误"""

    error_type = "CONFIG_PARSE_ERROR"


# =============================================================================
# 引用收集（关系库侧）
# =============================================================================


class EntitySourceError(ReconcileError):
    """关系库查询失败（系统级，引用收集阶段致命）"""

    error_type = "ENTITY_SOURCE_ERROR"


class CollectionError(ReconcileError):
    """单条记录的引用数据畸形或不一致（记录级，跳过并计数）"""

    error_type = "COLLECTION_ERROR"


# =============================================================================
# 对象存储
# =============================================================================


class ObjectStoreError(ReconcileError):
    """对象存储操作错误"""

    error_type = "OBJECT_STORE_ERROR"


class ObjectStoreNotConfiguredError(ObjectStoreError):
    """对象存储未配置或配置不安全"""

    error_type = "OBJECT_STORE_NOT_CONFIGURED"


class ObjectStoreConnectionError(ObjectStoreError):
    """对象存储客户端创建/连接失败"""

    error_type = "OBJECT_STORE_CONNECTION_ERROR"


class ObjectNotFoundError(ObjectStoreError):
    """对象不存在"""

    error_type = "OBJECT_NOT_FOUND"


class ObjectStoreTransientError(ObjectStoreError):
    """可重试的瞬时错误（网络、超时、限流）"""

    error_type = "OBJECT_STORE_TRANSIENT"


class ObjectStoreTimeoutError(ObjectStoreTransientError):
    """对象存储操作超时"""

    error_type = "OBJECT_STORE_TIMEOUT"


class ObjectStoreThrottlingError(ObjectStoreTransientError):
    """对象存储请求被限流"""

    error_type = "OBJECT_STORE_THROTTLING"


class StoreAnalysisError(ReconcileError):
    """存储清点失败（重试耗尽），部分清点结果绝不能当作完整结果使用"""

    error_type = "STORE_ANALYSIS_ERROR"


# =============================================================================
# 隔离 / 检查点 / 运行锁
# =============================================================================


class QuarantineMoveError(ReconcileError):
    """单个对象的复制/校验/删除失败（对象级，下次运行可重试）"""

    error_type = "QUARANTINE_MOVE_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        reason: str = ErrorCode.QUARANTINE_COPY_FAILED,
    ):
        super().__init__(message, details)
        self.reason = reason


class CheckpointPersistError(ReconcileError):
    """检查点/隔离台账写入失败（系统级，必须停止运行）"""

    error_type = "CHECKPOINT_PERSIST_ERROR"


class CheckpointCorruptError(ReconcileError):
    """检查点文件损坏或格式不符"""

    error_type = "CHECKPOINT_CORRUPT"


class RunLockError(ReconcileError):
    """同一环境已有其他破坏性运行持有运行锁"""

    error_type = "RUN_LOCK_HELD"


class InvalidTransitionError(ReconcileError):
    """运行状态机出现非法迁移"""

    error_type = "INVALID_STATE_TRANSITION"


# =============================================================================
# 警告
# =============================================================================


class DiffInconsistencyWarning(UserWarning):
    """多个引用源映射到同一个 expected key（仅提示，不影响分类）"""


# =============================================================================
# 结果构造
# =============================================================================


def make_success_result(**kwargs: Any) -> Dict[str, Any]:
    """构造成功结果: {ok: true, ...}"""
    result: Dict[str, Any] = {"ok": True}
    result.update(kwargs)
    return result
