"""
ludora_ops.reconcile.object_store - 对象存储适配层

对账引擎只依赖以下能力:
    list_page(prefix, token, delimiter) -> ListPage
    copy(src_key, dst_key, metadata)    服务端复制（合并用户元数据）
    delete(key)                         删除（对象不存在视为成功）
    stat(key) -> ObjectStat             大小 / etag / 元数据
    put_bytes / get_bytes               仅用于运行锁标记对象

后端:
    S3ObjectStore     S3 / MinIO 兼容（boto3）
    LocalObjectStore  本地目录（开发环境与测试）

所有操作统一经过注入的 RetryPolicy；瞬时错误（超时、限流、连接失败）
被归类为 ObjectStoreTransientError 并重试，其余错误立即抛出。

S3 凭证（环境变量）:
    LUDORA_S3_ENDPOINT / LUDORA_S3_BUCKET / LUDORA_S3_REGION
    LUDORA_S3_ACCESS_KEY / LUDORA_S3_SECRET_KEY
    未设置访问密钥时使用 boto3 默认凭证链（IAM Role / ~/.aws/credentials）。
"""

import hashlib
import json
import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlparse

from .config import BACKEND_LOCAL, BACKEND_S3, ObjectStoreConfig
from .errors import (
    ObjectNotFoundError,
    ObjectStoreConnectionError,
    ObjectStoreError,
    ObjectStoreNotConfiguredError,
    ObjectStoreThrottlingError,
    ObjectStoreTimeoutError,
    ObjectStoreTransientError,
)
from .models import ObjectRecord, ObjectStat
from .retry import RetryPolicy
from .state import atomic_write_bytes

logger = logging.getLogger(__name__)

# 单页最大 key 数（S3 上限 1000）
DEFAULT_PAGE_SIZE = 1000

# 文件读取缓冲区大小（64KB）
BUFFER_SIZE = 65536


@dataclass
class ListPage:
    """一页列举结果"""

    records: List[ObjectRecord] = field(default_factory=list)
    common_prefixes: List[str] = field(default_factory=list)
    next_token: Optional[str] = None


# =============================================================================
# 适配器接口
# =============================================================================


class ObjectStoreAdapter(ABC):
    """
    对象存储适配器基类

    子类实现 _list_page/_copy/_delete/_stat/_put_bytes/_get_bytes，
    公共方法负责统一套用重试策略。
    """

    backend: str = "abstract"

    def __init__(self, retry_policy: Optional[RetryPolicy] = None):
        self.retry_policy = retry_policy or RetryPolicy()

    # ---- 子类实现 ----

    @abstractmethod
    def _list_page(
        self, prefix: str, token: Optional[str], delimiter: Optional[str], page_size: int
    ) -> ListPage:
        ...

    @abstractmethod
    def _copy(self, src_key: str, dst_key: str, metadata: Dict[str, str]) -> None:
        ...

    @abstractmethod
    def _delete(self, key: str) -> None:
        ...

    @abstractmethod
    def _stat(self, key: str) -> ObjectStat:
        ...

    @abstractmethod
    def _put_bytes(self, key: str, data: bytes, metadata: Dict[str, str]) -> None:
        ...

    @abstractmethod
    def _get_bytes(self, key: str) -> bytes:
        ...

    # ---- 公共接口（带重试） ----

    def list_page(
        self,
        prefix: str,
        token: Optional[str] = None,
        delimiter: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ListPage:
        return self.retry_policy.call(
            lambda: self._list_page(prefix, token, delimiter, page_size),
            f"list({prefix})",
        )

    def iter_objects(self, prefix: str) -> Iterator[ObjectRecord]:
        """遍历 prefix 下的全部对象（逐页，每页独立重试）"""
        token: Optional[str] = None
        while True:
            page = self.list_page(prefix, token=token)
            yield from page.records
            if not page.next_token:
                return
            token = page.next_token

    def copy(self, src_key: str, dst_key: str, metadata: Optional[Dict[str, str]] = None) -> None:
        self.retry_policy.call(
            lambda: self._copy(src_key, dst_key, dict(metadata or {})),
            f"copy({src_key} -> {dst_key})",
        )

    def delete(self, key: str) -> None:
        self.retry_policy.call(lambda: self._delete(key), f"delete({key})")

    def stat(self, key: str) -> ObjectStat:
        """
        Raises:
            ObjectNotFoundError: 对象不存在
        """
        return self.retry_policy.call(lambda: self._stat(key), f"stat({key})")

    def exists(self, key: str) -> bool:
        try:
            self.stat(key)
            return True
        except ObjectNotFoundError:
            return False

    def put_bytes(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None:
        self.retry_policy.call(
            lambda: self._put_bytes(key, data, dict(metadata or {})),
            f"put({key})",
        )

    def get_bytes(self, key: str) -> bytes:
        return self.retry_policy.call(lambda: self._get_bytes(key), f"get({key})")

    def describe(self) -> Dict[str, Any]:
        return {"backend": self.backend}


# =============================================================================
# S3 / MinIO 后端
# =============================================================================


def _strip_etag(etag: Optional[str]) -> Optional[str]:
    if etag is None:
        return None
    return etag.strip('"')


class S3ObjectStore(ObjectStoreAdapter):
    """
    S3 兼容对象存储（boto3）

    重试统一由 RetryPolicy 控制，botocore 自身的重试被关闭，
    避免两层重试叠加导致退避时间不可控。
    """

    backend = BACKEND_S3

    def __init__(
        self,
        bucket: Optional[str],
        endpoint: Optional[str] = None,
        region: str = "us-east-1",
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        verify_ssl: bool = True,
        ca_bundle: Optional[str] = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
        addressing_style: str = "auto",
        retry_policy: Optional[RetryPolicy] = None,
    ):
        super().__init__(retry_policy)
        self.bucket = bucket
        self.endpoint = endpoint
        self.region = region
        self.access_key = access_key
        self.secret_key = secret_key
        self.verify_ssl = verify_ssl
        self.ca_bundle = ca_bundle
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.addressing_style = addressing_style
        self._client = None

    @classmethod
    def from_config(cls, config: ObjectStoreConfig, retry_policy: Optional[RetryPolicy] = None) -> "S3ObjectStore":
        return cls(
            bucket=config.bucket,
            endpoint=config.endpoint,
            region=config.region,
            access_key=config.access_key,
            secret_key=config.secret_key,
            verify_ssl=config.verify_ssl,
            ca_bundle=config.ca_bundle,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            addressing_style=config.addressing_style,
            retry_policy=retry_policy,
        )

    def describe(self) -> Dict[str, Any]:
        return {"backend": self.backend, "bucket": self.bucket, "endpoint": self.endpoint}

    def _check_configured(self) -> None:
        """检查配置是否完整"""
        if not self.bucket:
            raise ObjectStoreNotConfiguredError(
                "对象存储配置不完整，缺少: bucket (LUDORA_S3_BUCKET)",
                {"missing": ["bucket (LUDORA_S3_BUCKET)"]},
            )
        if bool(self.access_key) != bool(self.secret_key):
            raise ObjectStoreNotConfiguredError(
                "access_key 与 secret_key 必须同时设置",
                {"missing": ["access_key" if not self.access_key else "secret_key"]},
            )

    def _get_client(self):
        """
        获取 S3 客户端（惰性初始化）

        Raises:
            ObjectStoreNotConfiguredError: 配置不完整或不安全
            ObjectStoreConnectionError: 客户端创建失败
        """
        if self._client is not None:
            return self._client

        self._check_configured()

        # verify_ssl=True 时不允许使用 http:// 端点
        if self.verify_ssl and self.endpoint:
            parsed = urlparse(self.endpoint)
            if parsed.scheme.lower() == "http":
                raise ObjectStoreNotConfiguredError(
                    "SSL 验证已启用但端点使用 HTTP 协议，这是不安全的配置。"
                    "请使用 HTTPS 端点或设置 verify_ssl=false（仅用于开发环境）",
                    {
                        "endpoint": self.endpoint,
                        "verify_ssl": self.verify_ssl,
                        "hint": "开发环境可设置 LUDORA_S3_VERIFY_SSL=false",
                    },
                )

        import boto3
        from botocore.config import Config as BotoConfig

        try:
            config = BotoConfig(
                signature_version="s3v4",
                connect_timeout=self.connect_timeout,
                read_timeout=self.read_timeout,
                retries={"max_attempts": 0, "mode": "standard"},
                s3={"addressing_style": self.addressing_style},
            )
            verify_param = self.ca_bundle if self.ca_bundle else self.verify_ssl
            kwargs: Dict[str, Any] = {
                "endpoint_url": self.endpoint,
                "region_name": self.region,
                "config": config,
                "verify": verify_param,
            }
            if self.access_key and self.secret_key:
                kwargs["aws_access_key_id"] = self.access_key
                kwargs["aws_secret_access_key"] = self.secret_key
            self._client = boto3.client("s3", **kwargs)
            return self._client
        except Exception as e:
            raise ObjectStoreConnectionError(
                f"对象存储连接失败: {e}",
                {"endpoint": self.endpoint, "bucket": self.bucket, "error": str(e)},
            )

    def _classify_error(self, error: Exception, key: str) -> Exception:
        """
        将 boto 异常归类为领域错误

        Returns:
            ObjectNotFoundError / ObjectStoreTimeoutError /
            ObjectStoreThrottlingError / ObjectStoreTransientError / ObjectStoreError
        """
        if isinstance(error, ObjectStoreError):
            return error

        error_name = type(error).__name__
        error_str = str(error)
        code = ""
        status = None
        response = getattr(error, "response", None)
        if isinstance(response, dict):
            code = str(response.get("Error", {}).get("Code", ""))
            status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        details = {"key": key, "bucket": self.bucket, "error": error_str}

        if code in ("NoSuchKey", "404", "NotFound") or status == 404:
            return ObjectNotFoundError(f"对象不存在: {key}", details)

        if "Timeout" in error_name or "timeout" in error_str.lower():
            return ObjectStoreTimeoutError(f"对象存储操作超时: {key}", details)

        if code in ("SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded") or status == 503:
            return ObjectStoreThrottlingError(f"对象存储请求被限流: {key}", details)

        if (
            "EndpointConnectionError" in error_name
            or "ConnectionClosedError" in error_name
            or "ConnectionError" in error_name
            or code in ("InternalError", "ServiceUnavailable", "500")
            or status in (500, 502, 504)
        ):
            return ObjectStoreTransientError(f"对象存储暂时不可用: {key}", details)

        return ObjectStoreError(f"对象存储操作失败: {key}", details)

    def _list_page(
        self, prefix: str, token: Optional[str], delimiter: Optional[str], page_size: int
    ) -> ListPage:
        client = self._get_client()
        kwargs: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": page_size}
        if token:
            kwargs["ContinuationToken"] = token
        if delimiter:
            kwargs["Delimiter"] = delimiter
        try:
            response = client.list_objects_v2(**kwargs)
        except Exception as e:
            raise self._classify_error(e, prefix) from e

        records = [
            ObjectRecord(
                key=item["Key"],
                size_bytes=int(item.get("Size", 0)),
                last_modified=item.get("LastModified"),
                etag=_strip_etag(item.get("ETag")),
            )
            for item in response.get("Contents", []) or []
        ]
        common_prefixes = [p["Prefix"] for p in response.get("CommonPrefixes", []) or []]
        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ListPage(records=records, common_prefixes=common_prefixes, next_token=next_token)

    def _stat(self, key: str) -> ObjectStat:
        client = self._get_client()
        try:
            head = client.head_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            raise self._classify_error(e, key) from e
        return ObjectStat(
            key=key,
            size_bytes=int(head.get("ContentLength", 0)),
            etag=_strip_etag(head.get("ETag")),
            last_modified=head.get("LastModified"),
            content_type=head.get("ContentType"),
            metadata=dict(head.get("Metadata", {}) or {}),
        )

    def _copy(self, src_key: str, dst_key: str, metadata: Dict[str, str]) -> None:
        client = self._get_client()
        source = self._stat(src_key)
        merged = dict(source.metadata)
        merged.update(metadata)
        extra_args: Dict[str, Any] = {"MetadataDirective": "REPLACE", "Metadata": merged}
        if source.content_type:
            extra_args["ContentType"] = source.content_type
        try:
            # 托管复制：大对象自动走 multipart copy
            client.copy(
                CopySource={"Bucket": self.bucket, "Key": src_key},
                Bucket=self.bucket,
                Key=dst_key,
                ExtraArgs=extra_args,
            )
        except Exception as e:
            raise self._classify_error(e, src_key) from e

    def _delete(self, key: str) -> None:
        client = self._get_client()
        try:
            client.delete_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            classified = self._classify_error(e, key)
            if isinstance(classified, ObjectNotFoundError):
                return
            raise classified from e

    def _put_bytes(self, key: str, data: bytes, metadata: Dict[str, str]) -> None:
        client = self._get_client()
        try:
            client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                Metadata=metadata,
                ContentType="application/json",
            )
        except Exception as e:
            raise self._classify_error(e, key) from e

    def _get_bytes(self, key: str) -> bytes:
        client = self._get_client()
        try:
            response = client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except Exception as e:
            raise self._classify_error(e, key) from e


# =============================================================================
# 本地目录后端
# =============================================================================


def _md5_file(path: Path) -> str:
    hasher = hashlib.md5()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(BUFFER_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


class LocalObjectStore(ObjectStoreAdapter):
    """
    本地目录模拟的对象存储

    - key 即相对 root 的路径
    - 用户元数据保存在同目录隐藏文件 .{name}.meta.json
    - 以 "." 开头或以 .tmp 结尾的文件不会被列举
    - etag 为内容 md5（与 S3 单段上传一致）
    """

    backend = BACKEND_LOCAL

    def __init__(self, root: str, retry_policy: Optional[RetryPolicy] = None):
        super().__init__(retry_policy or RetryPolicy.no_retry())
        if not root:
            raise ObjectStoreNotConfiguredError(
                "local 后端需要配置 root (LUDORA_STORE_ROOT)",
                {"missing": ["root (LUDORA_STORE_ROOT)"]},
            )
        self.root = Path(root)

    def describe(self) -> Dict[str, Any]:
        return {"backend": self.backend, "root": str(self.root)}

    def _path(self, key: str) -> Path:
        normalized = key.lstrip("/").replace("\\", "/")
        if any(part == ".." for part in normalized.split("/")):
            raise ObjectStoreError(f"非法的对象 key: {key}", {"key": key})
        return self.root / normalized

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.parent / f".{path.name}.meta.json"

    def _read_meta(self, path: Path) -> Dict[str, str]:
        meta_path = self._meta_path(path)
        if not meta_path.exists():
            return {}
        with open(meta_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write_meta(self, path: Path, metadata: Dict[str, str]) -> None:
        meta_path = self._meta_path(path)
        if metadata:
            atomic_write_bytes(meta_path, json.dumps(metadata, ensure_ascii=False).encode("utf-8"))
        elif meta_path.exists():
            meta_path.unlink()

    def _all_keys(self, prefix: str) -> List[str]:
        if not self.root.exists():
            return []
        keys = []
        for path in self.root.rglob("*"):
            if path.is_dir():
                continue
            name = path.name
            if name.startswith(".") or name.endswith(".tmp"):
                continue
            rel = path.relative_to(self.root).as_posix()
            if rel.startswith(prefix):
                keys.append(rel)
        return sorted(keys)

    def _record(self, key: str) -> ObjectRecord:
        stat = self._path(key).stat()
        return ObjectRecord(
            key=key,
            size_bytes=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    def _list_page(
        self, prefix: str, token: Optional[str], delimiter: Optional[str], page_size: int
    ) -> ListPage:
        keys = [k for k in self._all_keys(prefix) if token is None or k > token]
        records: List[ObjectRecord] = []
        common_prefixes: List[str] = []
        last_key: Optional[str] = None
        for key in keys:
            if len(records) + len(common_prefixes) >= page_size:
                break
            last_key = key
            if delimiter:
                rest = key[len(prefix):]
                if delimiter in rest:
                    common = prefix + rest.split(delimiter, 1)[0] + delimiter
                    if common not in common_prefixes:
                        common_prefixes.append(common)
                    continue
            records.append(self._record(key))
        has_more = last_key is not None and keys and keys[-1] != last_key
        return ListPage(
            records=records,
            common_prefixes=common_prefixes,
            next_token=last_key if has_more else None,
        )

    def _stat(self, key: str) -> ObjectStat:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFoundError(f"对象不存在: {key}", {"key": key, "root": str(self.root)})
        stat = path.stat()
        return ObjectStat(
            key=key,
            size_bytes=stat.st_size,
            etag=_md5_file(path),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            metadata=self._read_meta(path),
        )

    def _copy(self, src_key: str, dst_key: str, metadata: Dict[str, str]) -> None:
        src = self._path(src_key)
        if not src.is_file():
            raise ObjectNotFoundError(f"对象不存在: {src_key}", {"key": src_key})
        dst = self._path(dst_key)
        dst.parent.mkdir(parents=True, exist_ok=True)
        temp = dst.parent / f".{dst.name}.{os.getpid()}.copy.tmp"
        try:
            shutil.copy2(src, temp)
            os.replace(temp, dst)
        except OSError as e:
            raise ObjectStoreError(
                f"复制失败: {src_key} -> {dst_key}",
                {"src": src_key, "dst": dst_key, "error": str(e)},
            ) from e
        finally:
            if temp.exists():
                temp.unlink()
        merged = self._read_meta(src)
        merged.update(metadata)
        self._write_meta(dst, merged)

    def _delete(self, key: str) -> None:
        path = self._path(key)
        try:
            if path.exists():
                path.unlink()
            meta_path = self._meta_path(path)
            if meta_path.exists():
                meta_path.unlink()
        except OSError as e:
            raise ObjectStoreError(f"删除失败: {key}", {"key": key, "error": str(e)}) from e

    def _put_bytes(self, key: str, data: bytes, metadata: Dict[str, str]) -> None:
        path = self._path(key)
        atomic_write_bytes(path, data)
        self._write_meta(path, metadata)

    def _get_bytes(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFoundError(f"对象不存在: {key}", {"key": key})
        return path.read_bytes()


# =============================================================================
# 工厂
# =============================================================================


def create_object_store(
    config: ObjectStoreConfig, retry_policy: Optional[RetryPolicy] = None
) -> ObjectStoreAdapter:
    """根据配置创建对象存储适配器"""
    if config.backend == BACKEND_LOCAL:
        return LocalObjectStore(root=config.root or "", retry_policy=retry_policy)
    return S3ObjectStore.from_config(config, retry_policy=retry_policy)
