"""
ludora_ops.reconcile.config - 配置管理模块

支持:
- CLI --config 参数覆盖
- 环境变量 LUDORA_RECONCILE_CONFIG 指定配置文件路径
- TOML 格式配置文件
- 环境变量覆盖单个配置项（凭证、bucket、DSN 等）

优先级: --config > LUDORA_RECONCILE_CONFIG > ./.ludora/reconcile.toml > ~/.ludora/reconcile.toml

配置示例（reconcile.toml）:

    [postgres]
    dsn = "postgresql://ludora_ro@localhost:5432/ludora"
    statement_timeout_ms = 60000

    [object_store]
    backend = "s3"                  # s3 | local
    bucket = "ludora-files"
    region = "eu-central-1"
    own_url_prefixes = ["https://ludora-files.s3.eu-central-1.amazonaws.com/"]

    [retry]
    max_attempts = 5
    base_delay_seconds = 0.5
    max_delay_seconds = 30
    jitter_factor = 0.3

    [reconcile]
    batch_size = 100
    workers = 8
    check_threshold = "24h"
    quarantine_ttl = "30d"
    lock_lease = "2h"
    state_dir = "./.ludora/reconcile-state"

    [logging]
    level = "INFO"
"""

import logging
import os
import re
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, List, Optional, Union

from .errors import ConfigError, ConfigNotFoundError, ConfigParseError

# 环境变量名称
ENV_CONFIG_PATH = "LUDORA_RECONCILE_CONFIG"
ENV_POSTGRES_DSN = "POSTGRES_DSN"
ENV_STORE_BACKEND = "LUDORA_STORE_BACKEND"
ENV_STORE_ROOT = "LUDORA_STORE_ROOT"
ENV_S3_BUCKET = "LUDORA_S3_BUCKET"
ENV_S3_ENDPOINT = "LUDORA_S3_ENDPOINT"
ENV_S3_REGION = "LUDORA_S3_REGION"
ENV_S3_ACCESS_KEY = "LUDORA_S3_ACCESS_KEY"
ENV_S3_SECRET_KEY = "LUDORA_S3_SECRET_KEY"
ENV_S3_VERIFY_SSL = "LUDORA_S3_VERIFY_SSL"
ENV_STATE_DIR = "LUDORA_RECONCILE_STATE_DIR"

# 默认配置文件搜索路径（按优先级）
def default_config_paths() -> List[Path]:
    return [
        Path("./.ludora/reconcile.toml"),
        Path.home() / ".ludora" / "reconcile.toml",
    ]

# 合法环境
VALID_ENVIRONMENTS = ("development", "staging", "production")

# 存储后端
BACKEND_S3 = "s3"
BACKEND_LOCAL = "local"
VALID_BACKENDS = {BACKEND_S3, BACKEND_LOCAL}

VALID_ADDRESSING_STYLES = {"auto", "path", "virtual"}

DEFAULT_STATE_DIR = "./.ludora/reconcile-state"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# =============================================================================
# 时长解析
# =============================================================================

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "": 1,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}


def parse_duration(value: Union[str, int, float, timedelta], key: str = "duration") -> timedelta:
    """
    解析时长字符串

    支持: "90s" / "45m" / "36h" / "2d" / "1w" / 纯数字（秒）

    Args:
        value: 时长字符串、秒数或 timedelta
        key: 配置键名（用于错误信息）

    Raises:
        ConfigError: 格式无效或为负数
    """
    if isinstance(value, timedelta):
        seconds = value.total_seconds()
    elif isinstance(value, bool):
        raise ConfigError(f"无效的时长: {value}", {"key": key, "value": value})
    elif isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ConfigError(
                f"无效的时长格式: {value}，示例: 90s / 45m / 36h / 2d",
                {"key": key, "value": value},
            )
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
    if seconds < 0:
        raise ConfigError(f"时长不能为负数: {value}", {"key": key, "value": value})
    return timedelta(seconds=seconds)


def _env_bool(name: str) -> Optional[bool]:
    raw = os.environ.get(name)
    if raw is None:
        return None
    return raw.strip().lower() not in ("false", "0", "no", "off")


# =============================================================================
# 规范化配置对象
# =============================================================================


@dataclass
class PostgresConfig:
    """PostgreSQL 只读连接配置（引用收集用）"""

    dsn: str = ""
    connect_timeout: float = 10.0
    # 单条语句超时，避免生产运行期间长时间占用数据库
    statement_timeout_ms: int = 60000
    # 服务端游标每次拉取行数
    fetch_size: int = 500

    def __post_init__(self):
        if self.statement_timeout_ms < 0:
            raise ConfigError(
                f"statement_timeout_ms 不能为负数: {self.statement_timeout_ms}",
                {"section": "postgres", "key": "statement_timeout_ms", "value": self.statement_timeout_ms},
            )
        if self.fetch_size <= 0:
            raise ConfigError(
                f"fetch_size 必须为正数: {self.fetch_size}",
                {"section": "postgres", "key": "fetch_size", "value": self.fetch_size},
            )


@dataclass
class ObjectStoreConfig:
    """对象存储配置"""

    backend: str = BACKEND_S3
    bucket: Optional[str] = None
    endpoint: Optional[str] = None
    region: str = "us-east-1"
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    # local 后端根目录
    root: Optional[str] = None
    verify_ssl: bool = True
    ca_bundle: Optional[str] = None
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    addressing_style: str = "auto"
    # 旧版 URL 字段中指向本存储的绝对 URL 前缀（剥离后即为 key）
    own_url_prefixes: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.backend not in VALID_BACKENDS:
            raise ConfigError(
                f"无效的存储后端: {self.backend}，有效值: {', '.join(sorted(VALID_BACKENDS))}",
                {"section": "object_store", "key": "backend", "value": self.backend},
            )
        if self.addressing_style not in VALID_ADDRESSING_STYLES:
            raise ConfigError(
                f"无效的 addressing_style: {self.addressing_style}",
                {"section": "object_store", "key": "addressing_style", "value": self.addressing_style},
            )
        if not isinstance(self.own_url_prefixes, list):
            raise ConfigError(
                f"own_url_prefixes 必须为列表类型，当前: {type(self.own_url_prefixes).__name__}",
                {"section": "object_store", "key": "own_url_prefixes", "value": self.own_url_prefixes},
            )
        for timeout_key in ("connect_timeout", "read_timeout"):
            if getattr(self, timeout_key) <= 0:
                raise ConfigError(
                    f"{timeout_key} 必须为正数",
                    {"section": "object_store", "key": timeout_key, "value": getattr(self, timeout_key)},
                )


@dataclass
class RetryConfig:
    """统一重试策略（list/copy/delete/stat 共用）"""

    max_attempts: int = 5
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    jitter_factor: float = 0.3

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigError(
                f"max_attempts 至少为 1: {self.max_attempts}",
                {"section": "retry", "key": "max_attempts", "value": self.max_attempts},
            )
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ConfigError(
                "重试延迟不能为负数",
                {"section": "retry", "base_delay_seconds": self.base_delay_seconds,
                 "max_delay_seconds": self.max_delay_seconds},
            )
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ConfigError(
                f"jitter_factor 必须在 0.0 ~ 1.0 之间: {self.jitter_factor}",
                {"section": "retry", "key": "jitter_factor", "value": self.jitter_factor},
            )


@dataclass
class ReconcileSettings:
    """对账运行默认参数（CLI 参数可覆盖）"""

    batch_size: int = 100
    workers: int = 8
    check_threshold: timedelta = field(default_factory=lambda: timedelta(hours=24))
    quarantine_ttl: timedelta = field(default_factory=lambda: timedelta(days=30))
    lock_lease: timedelta = field(default_factory=lambda: timedelta(hours=2))
    state_dir: str = DEFAULT_STATE_DIR
    # 确认提示与报告中展示的样例 key 数量
    sample_size: int = 10

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ConfigError(
                f"batch_size 必须为正数: {self.batch_size}",
                {"section": "reconcile", "key": "batch_size", "value": self.batch_size},
            )
        if self.workers <= 0:
            raise ConfigError(
                f"workers 必须为正数: {self.workers}",
                {"section": "reconcile", "key": "workers", "value": self.workers},
            )
        if self.sample_size < 0:
            raise ConfigError(
                f"sample_size 不能为负数: {self.sample_size}",
                {"section": "reconcile", "key": "sample_size", "value": self.sample_size},
            )


@dataclass
class LoggingConfig:
    """日志配置"""

    level: str = "INFO"
    format: str = DEFAULT_LOG_FORMAT
    file: Optional[str] = None

    def __post_init__(self):
        if logging.getLevelName(self.level.upper()) == f"Level {self.level.upper()}":
            raise ConfigError(
                f"无效的日志级别: {self.level}",
                {"section": "logging", "key": "level", "value": self.level},
            )


@dataclass
class AppConfig:
    """完整配置（规范化对象）"""

    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    object_store: ObjectStoreConfig = field(default_factory=ObjectStoreConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    reconcile: ReconcileSettings = field(default_factory=ReconcileSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # 配置文件来源路径（用于调试）
    _source_path: Optional[Path] = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> "AppConfig":
        """从字典创建配置对象（环境变量优先于文件）"""
        postgres_data = data.get("postgres", {})
        store_data = data.get("object_store", {})
        retry_data = data.get("retry", {})
        reconcile_data = data.get("reconcile", {})
        logging_data = data.get("logging", {})

        env_verify = _env_bool(ENV_S3_VERIFY_SSL)

        postgres = PostgresConfig(
            dsn=os.environ.get(ENV_POSTGRES_DSN) or postgres_data.get("dsn", ""),
            connect_timeout=postgres_data.get("connect_timeout", 10.0),
            statement_timeout_ms=postgres_data.get("statement_timeout_ms", 60000),
            fetch_size=postgres_data.get("fetch_size", 500),
        )

        object_store = ObjectStoreConfig(
            backend=os.environ.get(ENV_STORE_BACKEND) or store_data.get("backend", BACKEND_S3),
            bucket=os.environ.get(ENV_S3_BUCKET) or store_data.get("bucket"),
            endpoint=os.environ.get(ENV_S3_ENDPOINT) or store_data.get("endpoint"),
            region=os.environ.get(ENV_S3_REGION) or store_data.get("region", "us-east-1"),
            access_key=os.environ.get(ENV_S3_ACCESS_KEY) or store_data.get("access_key"),
            secret_key=os.environ.get(ENV_S3_SECRET_KEY) or store_data.get("secret_key"),
            root=os.environ.get(ENV_STORE_ROOT) or store_data.get("root"),
            verify_ssl=env_verify if env_verify is not None else store_data.get("verify_ssl", True),
            ca_bundle=store_data.get("ca_bundle"),
            connect_timeout=store_data.get("connect_timeout", 10.0),
            read_timeout=store_data.get("read_timeout", 60.0),
            addressing_style=store_data.get("addressing_style", "auto"),
            own_url_prefixes=store_data.get("own_url_prefixes", []),
        )

        retry = RetryConfig(
            max_attempts=retry_data.get("max_attempts", 5),
            base_delay_seconds=retry_data.get("base_delay_seconds", 0.5),
            max_delay_seconds=retry_data.get("max_delay_seconds", 30.0),
            jitter_factor=retry_data.get("jitter_factor", 0.3),
        )

        reconcile = ReconcileSettings(
            batch_size=reconcile_data.get("batch_size", 100),
            workers=reconcile_data.get("workers", 8),
            check_threshold=parse_duration(
                reconcile_data.get("check_threshold", "24h"), "reconcile.check_threshold"
            ),
            quarantine_ttl=parse_duration(
                reconcile_data.get("quarantine_ttl", "30d"), "reconcile.quarantine_ttl"
            ),
            lock_lease=parse_duration(reconcile_data.get("lock_lease", "2h"), "reconcile.lock_lease"),
            state_dir=os.environ.get(ENV_STATE_DIR) or reconcile_data.get("state_dir", DEFAULT_STATE_DIR),
            sample_size=reconcile_data.get("sample_size", 10),
        )

        return cls(
            postgres=postgres,
            object_store=object_store,
            retry=retry,
            reconcile=reconcile,
            logging=LoggingConfig(
                level=logging_data.get("level", "INFO"),
                format=logging_data.get("format", DEFAULT_LOG_FORMAT),
                file=logging_data.get("file"),
            ),
            _source_path=source_path,
        )


# =============================================================================
# TOML 解析工具
# =============================================================================


def _get_toml_parser():
    """获取 TOML 解析器（兼容 Python 3.11 以下版本）"""
    if sys.version_info >= (3, 11):
        import tomllib

        return tomllib
    else:
        try:
            import tomli as tomllib

            return tomllib
        except ImportError:
            raise ConfigError(
                "需要安装 tomli 包来解析 TOML 配置文件 (Python < 3.11)",
                {"hint": "pip install tomli"},
            )


def _parse_toml_file(path: Path) -> dict:
    """解析 TOML 文件"""
    tomllib = _get_toml_parser()
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except Exception as e:
        raise ConfigParseError(
            f"配置文件解析失败: {e}",
            {"path": str(path), "error": str(e)},
        )


# =============================================================================
# 配置管理类
# =============================================================================


class Config:
    """配置文件定位与加载"""

    def __init__(self, config_path: Optional[str] = None):
        """
        初始化配置

        Args:
            config_path: 配置文件路径，优先级:
                1. 显式传入的 config_path（来自 --config 参数）
                2. 环境变量 LUDORA_RECONCILE_CONFIG
                3. ./.ludora/reconcile.toml
                4. ~/.ludora/reconcile.toml
        """
        self._config_path: Optional[Path] = None
        self._data: dict = {}
        self._loaded = False
        self._resolve_config_path(config_path)

    def _resolve_config_path(self, explicit_path: Optional[str] = None) -> None:
        if explicit_path:
            path = Path(explicit_path)
            if not path.exists():
                raise ConfigNotFoundError(
                    f"指定的配置文件不存在: {explicit_path}",
                    {"path": str(path.absolute())},
                )
            self._config_path = path
            return

        env_path = os.environ.get(ENV_CONFIG_PATH)
        if env_path:
            path = Path(env_path)
            if not path.exists():
                raise ConfigNotFoundError(
                    f"环境变量 {ENV_CONFIG_PATH} 指定的配置文件不存在: {env_path}",
                    {"path": str(path.absolute()), "env_var": ENV_CONFIG_PATH},
                )
            self._config_path = path
            return

        for default_path in default_config_paths():
            if default_path.exists():
                self._config_path = default_path
                return

        # 未找到配置文件：仅使用默认值 + 环境变量
        self._config_path = None

    def load(self) -> "Config":
        """加载配置文件"""
        if self._loaded:
            return self
        self._data = _parse_toml_file(self._config_path) if self._config_path else {}
        self._loaded = True
        return self

    def get(self, key: str, default: Any = None) -> Any:
        """
        获取配置值，支持点分隔的嵌套键，如 "reconcile.batch_size"
        """
        if not self._loaded:
            self.load()
        value: Any = self._data
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def to_app_config(self) -> AppConfig:
        """转换为规范化的 AppConfig（触发校验）"""
        if not self._loaded:
            self.load()
        return AppConfig.from_dict(self._data, self._config_path)

    @property
    def config_path(self) -> Optional[Path]:
        """当前使用的配置文件路径"""
        return self._config_path

    def __repr__(self) -> str:
        return f"Config(path={self._config_path}, loaded={self._loaded})"


def load_app_config(config_path: Optional[str] = None) -> AppConfig:
    """
    加载规范化配置（CLI 入口使用）

    每次调用都会重新读取文件与环境变量，不缓存全局实例。

    Raises:
        ConfigError: 配置无效
    """
    return Config(config_path).to_app_config()


# =============================================================================
# 日志
# =============================================================================


def setup_logging(config: LoggingConfig, verbose: bool = False) -> None:
    """
    配置根 logger

    日志统一输出到 stderr（stdout 保留给 JSON 报告），可选同时写入文件。
    """
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.file, encoding="utf-8"))
    logging.basicConfig(level=level, format=config.format, handlers=handlers, force=True)
    # boto 系列 logger 在 DEBUG 下过于冗长
    for noisy in ("botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
