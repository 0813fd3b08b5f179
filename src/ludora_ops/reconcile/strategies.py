"""
ludora_ops.reconcile.strategies - 引用提取策略

关系库表示"这里有一个文件"的方式有四种，每种对应一个纯函数
record -> ExtractionOutcome（引用列表 + 数据质量问题），按 SourceKind 分发:

    structured-boolean-filename  has_xxx=true 且 xxx_filename 非空 -> 按路径模板构造 key
    legacy-url                   旧版单 URL 字段（相对路径 / 本存储绝对 URL）-> 反推 key
    jsonb-path                   JSON 文档 {slot: descriptor | [descriptor, ...]} -> 每个描述符一条
    polymorphic                  (type, id) 先解析到所属实体，再对所属实体套用上面三种

数据质量规则（不产生引用，只记录警告，避免误判为 missing）:
    - 标志位为真但文件名为空
    - 旧版 URL 字段为占位符（如 HAS_IMAGE）

占位符约定是历史遗留的脆弱约定: 占位符表示"文件存在，位置由其他字段决定"，
只按 PLACEHOLDER_SENTINELS 中的精确字符串识别，不做任何泛化推断。
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import unquote, urlparse

from .errors import CollectionError, ErrorCode
from .keys import VISIBILITY_PRIVATE, VISIBILITY_PUBLIC, build_asset_key, collapse_key
from .models import FileReference, SourceKind

# 旧版 URL 字段的占位符（技术债: 见模块说明）
PLACEHOLDER_SENTINELS: FrozenSet[str] = frozenset({"HAS_IMAGE", "HAS_VIDEO", "HAS_FILE", "HAS_AUDIO"})


# =============================================================================
# 字段规格
# =============================================================================


@dataclass(frozen=True)
class StructuredFieldSpec:
    """布尔标志 + 文件名 字段对"""

    field_name: str
    flag_column: str
    filename_column: str
    visibility: str
    asset_class: str
    # 同一逻辑资产的槽位名（旧版 URL 字段据此判断是否被覆盖）
    slot: str = ""
    # 路径中 entity_type 片段取自该列（如 product.product_type）
    entity_type_column: Optional[str] = None

    kind = SourceKind.STRUCTURED


@dataclass(frozen=True)
class LegacyUrlSpec:
    """旧版单 URL 字段（优先级低于标准字段）"""

    field_name: str
    url_column: str
    visibility: str
    asset_class: str
    slot: str = ""
    entity_type_column: Optional[str] = None

    kind = SourceKind.LEGACY_URL


@dataclass(frozen=True)
class SlotOverride:
    visibility: Optional[str] = None
    asset_class: Optional[str] = None


@dataclass(frozen=True)
class JsonbPathSpec:
    """
    JSON 文档字段

    文档形如 {slot: descriptor | [descriptor, ...]}，descriptor 为:
        {"filename": "a.pdf"}              按路径模板构造 key
        {"key": "production/.../a.pdf"}    直接给出完整 key（兼容 s3_key）
        {"is_public": true, ...}           覆盖默认可见性
    """

    field_name: str
    column: str
    visibility: str
    asset_class: str
    slot_overrides: Mapping[str, SlotOverride] = field(default_factory=dict)
    filename_keys: Tuple[str, ...] = ("filename", "file_name")
    key_keys: Tuple[str, ...] = ("key", "s3_key")

    kind = SourceKind.JSONB_PATH


FieldSpec = Union[StructuredFieldSpec, LegacyUrlSpec, JsonbPathSpec]


@dataclass(frozen=True)
class OwnerSpec:
    """多态关系中一种所属实体的解析方式"""

    table: str
    fields: Tuple[FieldSpec, ...]
    id_column: str = "id"


@dataclass(frozen=True)
class PolymorphicSpec:
    """(type, id) 多态关系"""

    field_name: str
    type_column: str
    id_column: str
    owners: Mapping[str, OwnerSpec]
    # 未登记的 type 静默跳过（这些实体由各自的表直接收集）
    ignore_unknown_types: bool = True

    kind = SourceKind.POLYMORPHIC


@dataclass(frozen=True)
class EntityTypeSpec:
    """实体类型 -> 表 + 提取策略"""

    entity_type: str
    table: str
    fields: Tuple[Union[FieldSpec, PolymorphicSpec], ...]
    id_column: str = "id"


# =============================================================================
# 提取结果
# =============================================================================


@dataclass(frozen=True)
class DataQualityIssue:
    entity_type: str
    entity_id: str
    field_name: str
    reason: str
    detail: str = ""


@dataclass
class ExtractionOutcome:
    references: List[FileReference] = field(default_factory=list)
    issues: List[DataQualityIssue] = field(default_factory=list)
    # 被标准字段覆盖而未使用的旧版字段数量
    superseded: int = 0

    def extend(self, other: "ExtractionOutcome") -> None:
        self.references.extend(other.references)
        self.issues.extend(other.issues)
        self.superseded += other.superseded


@dataclass(frozen=True)
class ExtractionContext:
    environment: str
    entity_type: str
    entity_id: str
    # 旧版 URL 中属于本存储的绝对 URL 前缀
    own_url_prefixes: Tuple[str, ...] = ()
    source_kind: Optional[SourceKind] = None


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "yes", "y")
    return bool(value)


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _entity_type_segment(record: Mapping[str, Any], ctx: ExtractionContext, column: Optional[str]) -> str:
    if column:
        value = record.get(column)
        if _blank(value):
            raise CollectionError(
                f"{ctx.entity_type}:{ctx.entity_id} 缺少路径列 {column}",
                {"entity_type": ctx.entity_type, "entity_id": ctx.entity_id, "column": column,
                 "reason": ErrorCode.COLLECT_RECORD_MALFORMED},
            )
        return str(value).strip()
    return ctx.entity_type


def _reference(ctx: ExtractionContext, spec_kind: SourceKind, field_name: str, key: str) -> FileReference:
    return FileReference(
        entity_type=ctx.entity_type,
        entity_id=ctx.entity_id,
        field_name=field_name,
        source_kind=ctx.source_kind or spec_kind,
        expected_key=key,
    )


# =============================================================================
# 策略实现
# =============================================================================


def extract_structured(
    spec: StructuredFieldSpec, record: Mapping[str, Any], ctx: ExtractionContext
) -> ExtractionOutcome:
    outcome = ExtractionOutcome()
    if not _truthy(record.get(spec.flag_column)):
        return outcome
    filename = record.get(spec.filename_column)
    if _blank(filename):
        outcome.issues.append(
            DataQualityIssue(
                entity_type=ctx.entity_type,
                entity_id=ctx.entity_id,
                field_name=spec.field_name,
                reason=ErrorCode.COLLECT_FLAG_WITHOUT_FILENAME,
                detail=f"{spec.flag_column}=true 但 {spec.filename_column} 为空",
            )
        )
        return outcome
    key = build_asset_key(
        ctx.environment,
        spec.visibility,
        spec.asset_class,
        _entity_type_segment(record, ctx, spec.entity_type_column),
        ctx.entity_id,
        str(filename),
    )
    outcome.references.append(_reference(ctx, spec.kind, spec.field_name, key))
    return outcome


def _strip_own_prefix(url: str, own_prefixes: Sequence[str]) -> Optional[str]:
    for prefix in own_prefixes:
        if prefix and url.startswith(prefix):
            return url[len(prefix):]
    return None


def legacy_url_to_key(
    url: str,
    spec: LegacyUrlSpec,
    record: Mapping[str, Any],
    ctx: ExtractionContext,
) -> Optional[str]:
    """
    旧版 URL -> key

    - 本存储的绝对 URL: 去掉前缀后按相对路径处理
    - 其他绝对 URL（外部链接）: 返回 None
    - 以 {env}/ 开头的相对路径: 直接作为 key
    - 以 public/ 或 private/ 开头的相对路径: 补上 {env}/
    - 纯文件名: 按路径模板构造
    """
    value = url.strip()
    own = _strip_own_prefix(value, ctx.own_url_prefixes)
    if own is not None:
        value = own
    else:
        parsed = urlparse(value)
        if parsed.scheme or parsed.netloc:
            return None
    path = collapse_key(unquote(value.split("?", 1)[0].split("#", 1)[0]))
    if not path:
        return None
    if path.startswith(f"{ctx.environment}/"):
        return path
    if path.startswith(f"{VISIBILITY_PUBLIC}/") or path.startswith(f"{VISIBILITY_PRIVATE}/"):
        return f"{ctx.environment}/{path}"
    if "/" not in path:
        return build_asset_key(
            ctx.environment,
            spec.visibility,
            spec.asset_class,
            _entity_type_segment(record, ctx, spec.entity_type_column),
            ctx.entity_id,
            path,
        )
    raise CollectionError(
        f"{ctx.entity_type}:{ctx.entity_id} 无法识别的旧版路径: {url}",
        {"entity_type": ctx.entity_type, "entity_id": ctx.entity_id, "field": spec.field_name,
         "url": url, "reason": ErrorCode.COLLECT_RECORD_MALFORMED},
    )


def extract_legacy_url(
    spec: LegacyUrlSpec, record: Mapping[str, Any], ctx: ExtractionContext
) -> ExtractionOutcome:
    outcome = ExtractionOutcome()
    url = record.get(spec.url_column)
    if _blank(url):
        return outcome
    url = str(url)
    if url.strip() in PLACEHOLDER_SENTINELS:
        outcome.issues.append(
            DataQualityIssue(
                entity_type=ctx.entity_type,
                entity_id=ctx.entity_id,
                field_name=spec.field_name,
                reason=ErrorCode.COLLECT_PLACEHOLDER_URL,
                detail=f"{spec.url_column}={url.strip()}",
            )
        )
        return outcome
    key = legacy_url_to_key(url, spec, record, ctx)
    if key is not None:
        outcome.references.append(_reference(ctx, spec.kind, spec.field_name, key))
    return outcome


def _load_document(value: Any, spec: JsonbPathSpec, ctx: ExtractionContext) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if isinstance(value, (str, bytes)):
        if not value.strip():
            return None
        try:
            value = json.loads(value)
        except ValueError as e:
            raise CollectionError(
                f"{ctx.entity_type}:{ctx.entity_id} 字段 {spec.column} 不是合法 JSON",
                {"entity_type": ctx.entity_type, "entity_id": ctx.entity_id, "column": spec.column,
                 "error": str(e), "reason": ErrorCode.COLLECT_RECORD_MALFORMED},
            ) from e
    if not isinstance(value, dict):
        raise CollectionError(
            f"{ctx.entity_type}:{ctx.entity_id} 字段 {spec.column} 应为对象，实际为 {type(value).__name__}",
            {"entity_type": ctx.entity_type, "entity_id": ctx.entity_id, "column": spec.column,
             "reason": ErrorCode.COLLECT_RECORD_MALFORMED},
        )
    return value


def extract_jsonb_path(
    spec: JsonbPathSpec, record: Mapping[str, Any], ctx: ExtractionContext
) -> ExtractionOutcome:
    outcome = ExtractionOutcome()
    document = _load_document(record.get(spec.column), spec, ctx)
    if not document:
        return outcome

    for slot in sorted(document):
        entry = document[slot]
        if entry is None:
            continue
        descriptors = entry if isinstance(entry, list) else [entry]
        override = spec.slot_overrides.get(slot, SlotOverride())
        for index, descriptor in enumerate(descriptors):
            field_name = f"{spec.field_name}.{slot}" if len(descriptors) == 1 else f"{spec.field_name}.{slot}[{index}]"
            if not isinstance(descriptor, dict):
                raise CollectionError(
                    f"{ctx.entity_type}:{ctx.entity_id} {field_name} 描述符格式无效",
                    {"entity_type": ctx.entity_type, "entity_id": ctx.entity_id, "field": field_name,
                     "reason": ErrorCode.COLLECT_RECORD_MALFORMED},
                )
            explicit_key = next((descriptor[k] for k in spec.key_keys if not _blank(descriptor.get(k))), None)
            if explicit_key is not None:
                key = collapse_key(str(explicit_key))
                if not key.startswith(f"{ctx.environment}/"):
                    key = f"{ctx.environment}/{key}"
                outcome.references.append(_reference(ctx, spec.kind, field_name, key))
                continue
            filename = next((descriptor[k] for k in spec.filename_keys if not _blank(descriptor.get(k))), None)
            if filename is None:
                outcome.issues.append(
                    DataQualityIssue(
                        entity_type=ctx.entity_type,
                        entity_id=ctx.entity_id,
                        field_name=field_name,
                        reason=ErrorCode.COLLECT_FLAG_WITHOUT_FILENAME,
                        detail="描述符缺少文件名",
                    )
                )
                continue
            visibility = override.visibility or spec.visibility
            if "is_public" in descriptor:
                visibility = VISIBILITY_PUBLIC if _truthy(descriptor["is_public"]) else VISIBILITY_PRIVATE
            key = build_asset_key(
                ctx.environment,
                visibility,
                override.asset_class or spec.asset_class,
                ctx.entity_type,
                ctx.entity_id,
                str(filename),
            )
            outcome.references.append(_reference(ctx, spec.kind, field_name, key))
    return outcome


Extractor = Callable[[Any, Mapping[str, Any], ExtractionContext], ExtractionOutcome]

STRATEGIES: Dict[SourceKind, Extractor] = {
    SourceKind.STRUCTURED: extract_structured,
    SourceKind.LEGACY_URL: extract_legacy_url,
    SourceKind.JSONB_PATH: extract_jsonb_path,
}


def extract_fields(
    fields: Sequence[FieldSpec], record: Mapping[str, Any], ctx: ExtractionContext
) -> ExtractionOutcome:
    """
    对一条记录套用一组非多态字段规格

    旧版 URL 字段的槽位若已被标准字段产出引用，则该旧版字段被忽略。
    """
    outcome = ExtractionOutcome()
    covered_slots = set()
    for spec in fields:
        if spec.kind == SourceKind.LEGACY_URL:
            continue
        result = STRATEGIES[spec.kind](spec, record, ctx)
        slot = getattr(spec, "slot", "")
        if slot and result.references:
            covered_slots.add(slot)
        outcome.extend(result)
    for spec in fields:
        if spec.kind != SourceKind.LEGACY_URL:
            continue
        if spec.slot and spec.slot in covered_slots:
            if not _blank(record.get(spec.url_column)):
                outcome.superseded += 1
            continue
        outcome.extend(STRATEGIES[spec.kind](spec, record, ctx))
    return outcome
