"""
ludora_ops.reconcile.keys - 对象 key 构造与规范化

路径约定（三层资产结构）:
    {env}/{public|private}/{asset_class}/{entity_type}/{entity_id}/{filename}

系统前缀（不参与清点，不会被当作孤儿）:
    {env}/quarantine/{batch_id}/{original_key_encoded}
    {env}/.locks/reconcile.lock
"""

from typing import Tuple
from urllib.parse import quote, unquote

from .errors import CollectionError

VISIBILITY_PUBLIC = "public"
VISIBILITY_PRIVATE = "private"
VALID_VISIBILITIES = {VISIBILITY_PUBLIC, VISIBILITY_PRIVATE}

QUARANTINE_DIR = "quarantine"
LOCKS_DIR = ".locks"
LOCK_NAME = "reconcile.lock"


def collapse_key(key: str) -> str:
    """去除首尾空白与分隔符，统一反斜杠，折叠重复的 '/'（保留大小写）"""
    normalized = key.strip().replace("\\", "/").strip("/")
    while "//" in normalized:
        normalized = normalized.replace("//", "/")
    return normalized


def normalize_key(key: str) -> str:
    """比较用的规范化 key（在 collapse_key 基础上忽略大小写）"""
    return collapse_key(key).casefold()


def env_prefix(environment: str) -> str:
    return f"{environment}/"


def quarantine_prefix(environment: str) -> str:
    return f"{environment}/{QUARANTINE_DIR}/"


def lock_key(environment: str) -> str:
    return f"{environment}/{LOCKS_DIR}/{LOCK_NAME}"


def system_prefixes(environment: str) -> Tuple[str, ...]:
    return (quarantine_prefix(environment), f"{environment}/{LOCKS_DIR}/")


def is_system_key(environment: str, key: str) -> bool:
    return any(key.startswith(prefix) for prefix in system_prefixes(environment))


def encode_original_key(original_key: str) -> str:
    """把原始 key 编码为隔离目录下的单层名称（'/' 被转义）"""
    return quote(original_key, safe="")


def decode_original_key(encoded: str) -> str:
    return unquote(encoded)


def build_quarantine_key(environment: str, batch_id: str, original_key: str) -> str:
    return f"{quarantine_prefix(environment)}{batch_id}/{encode_original_key(original_key)}"


def _check_segment(name: str, value: str) -> str:
    value = str(value).strip().strip("/")
    if not value:
        raise CollectionError(f"路径片段 {name} 为空", {"segment": name})
    if any(part in ("..", ".") for part in value.split("/")):
        raise CollectionError(
            f"路径片段 {name} 含非法的相对路径: {value}",
            {"segment": name, "value": value},
        )
    return value


def build_asset_key(
    environment: str,
    visibility: str,
    asset_class: str,
    entity_type: str,
    entity_id: str,
    filename: str,
) -> str:
    """
    按路径模板构造 expected key

    Raises:
        CollectionError: 片段为空、可见性无效或含相对路径
    """
    if visibility not in VALID_VISIBILITIES:
        raise CollectionError(
            f"无效的可见性: {visibility}",
            {"visibility": visibility},
        )
    parts = [
        _check_segment("environment", environment),
        visibility,
        _check_segment("asset_class", asset_class),
        _check_segment("entity_type", entity_type),
        _check_segment("entity_id", entity_id),
        _check_segment("filename", filename),
    ]
    return collapse_key("/".join(parts))
