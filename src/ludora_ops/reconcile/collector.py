"""
ludora_ops.reconcile.collector - 引用收集器

按登记表遍历每种实体的全部记录，把每条记录中的文件引用转换为 expected key。

错误分级:
    - 单条记录畸形（CollectionError / 字段类型异常）: 记录日志、跳过该记录、计数
    - 数据质量问题（标志位为真但无文件名、占位符 URL）: 不产生引用，计数
    - 关系库查询失败（EntitySourceError）: 向上抛出，收集阶段失败

单条记录的引用要么全部产出，要么（出错时）一条都不产出。
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from .entity_source import EntitySource
from .errors import CollectionError, ErrorCode
from .models import FileReference, SourceKind
from .registry import DEFAULT_ENTITY_SPECS, build_registry
from .strategies import (
    EntityTypeSpec,
    ExtractionContext,
    ExtractionOutcome,
    PolymorphicSpec,
    extract_fields,
)

logger = logging.getLogger(__name__)


@dataclass
class CollectionStats:
    """收集阶段计数"""

    records_scanned: int = 0
    references: int = 0
    collection_errors: int = 0
    data_quality_warnings: int = 0
    superseded_legacy: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "records_scanned": self.records_scanned,
            "references": self.references,
            "collection_errors": self.collection_errors,
            "data_quality_warnings": self.data_quality_warnings,
            "superseded_legacy": self.superseded_legacy,
        }


class ReferenceCollector:
    """
    引用收集器

    用法:
        collector = ReferenceCollector(source)
        for ref in collector.collect("production"):
            ...
        collector.stats.collection_errors
    """

    def __init__(
        self,
        source: EntitySource,
        specs: Sequence[EntityTypeSpec] = DEFAULT_ENTITY_SPECS,
        own_url_prefixes: Sequence[str] = (),
    ):
        self.source = source
        self.registry = build_registry(specs)
        self.own_url_prefixes = tuple(own_url_prefixes)
        self.stats = CollectionStats()

    def collect(self, environment: str) -> Iterator[FileReference]:
        """
        遍历全部实体类型，流式产出 FileReference

        Raises:
            EntitySourceError: 关系库查询失败
        """
        self.stats = CollectionStats()
        for entity_type, spec in self.registry.items():
            logger.info(f"收集引用: {entity_type} (表 {spec.table})")
            before = self.stats.references
            for record in self.source.iter_records(spec.table, spec.id_column):
                self.stats.records_scanned += 1
                references = self._extract_record(environment, spec, record)
                self.stats.references += len(references)
                yield from references
            logger.debug(f"{entity_type}: {self.stats.references - before} 条引用")
        logger.info(
            f"引用收集完成: 记录 {self.stats.records_scanned}，引用 {self.stats.references}，"
            f"错误 {self.stats.collection_errors}，数据质量警告 {self.stats.data_quality_warnings}"
        )

    def _extract_record(
        self, environment: str, spec: EntityTypeSpec, record: Mapping[str, Any]
    ) -> List[FileReference]:
        entity_id = record.get(spec.id_column)
        try:
            if entity_id is None or str(entity_id).strip() == "":
                raise CollectionError(
                    f"{spec.entity_type} 记录缺少主键 {spec.id_column}",
                    {"entity_type": spec.entity_type, "reason": ErrorCode.COLLECT_RECORD_MALFORMED},
                )
            ctx = ExtractionContext(
                environment=environment,
                entity_type=spec.entity_type,
                entity_id=str(entity_id),
                own_url_prefixes=self.own_url_prefixes,
            )
            outcome = extract_fields(
                [f for f in spec.fields if f.kind != SourceKind.POLYMORPHIC], record, ctx
            )
            for poly in spec.fields:
                if poly.kind == SourceKind.POLYMORPHIC:
                    outcome.extend(self._extract_polymorphic(poly, record, ctx))
        except (CollectionError, KeyError, TypeError, ValueError) as e:
            self.stats.collection_errors += 1
            logger.warning(f"跳过记录 {spec.entity_type}:{entity_id}: {e}")
            return []

        for issue in outcome.issues:
            self.stats.data_quality_warnings += 1
            logger.warning(
                f"数据质量问题 {issue.entity_type}:{issue.entity_id}.{issue.field_name}: "
                f"{issue.reason} {issue.detail}"
            )
        self.stats.superseded_legacy += outcome.superseded
        return outcome.references

    def _extract_polymorphic(
        self, spec: PolymorphicSpec, record: Mapping[str, Any], ctx: ExtractionContext
    ) -> ExtractionOutcome:
        owner_type = record.get(spec.type_column)
        if owner_type is None or str(owner_type).strip() == "":
            return ExtractionOutcome()
        owner_type = str(owner_type).strip()
        owner = spec.owners.get(owner_type)
        if owner is None:
            if spec.ignore_unknown_types:
                return ExtractionOutcome()
            raise CollectionError(
                f"{ctx.entity_type}:{ctx.entity_id} 未登记的多态类型 {owner_type}",
                {"entity_type": ctx.entity_type, "entity_id": ctx.entity_id,
                 "owner_type": owner_type, "reason": ErrorCode.COLLECT_RECORD_MALFORMED},
            )

        owner_id = record.get(spec.id_column)
        if owner_id is None or str(owner_id).strip() == "":
            raise CollectionError(
                f"{ctx.entity_type}:{ctx.entity_id} 多态关系缺少 {spec.id_column}",
                {"entity_type": ctx.entity_type, "entity_id": ctx.entity_id,
                 "owner_type": owner_type, "reason": ErrorCode.COLLECT_RECORD_MALFORMED},
            )

        owner_record: Optional[Dict[str, Any]] = self.source.get_record(
            owner.table, owner_id, owner.id_column
        )
        if owner_record is None:
            raise CollectionError(
                f"{ctx.entity_type}:{ctx.entity_id} 指向的 {owner_type}:{owner_id} 不存在",
                {"entity_type": ctx.entity_type, "entity_id": ctx.entity_id,
                 "owner_type": owner_type, "owner_id": str(owner_id),
                 "reason": ErrorCode.COLLECT_OWNER_NOT_FOUND},
            )

        owner_ctx = ExtractionContext(
            environment=ctx.environment,
            entity_type=owner_type,
            entity_id=str(owner_id),
            own_url_prefixes=ctx.own_url_prefixes,
            source_kind=SourceKind.POLYMORPHIC,
        )
        return extract_fields(owner.fields, owner_record, owner_ctx)
