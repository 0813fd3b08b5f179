"""
ludora_ops.reconcile.reconciler - 差异计算

diff(references, objects) -> ReconciliationResult

比较前 key 统一规范化（大小写、首尾分隔符、重复分隔符）:
    - orphans: 存在于存储但无任何引用的对象
    - missing: 被引用但存储中不存在的 key（每个规范化 key 取第一条引用）
    - matched: 规范化 key 在引用中存在的对象数量
    - matched_keys: 两侧都存在的规范化 key 数量

多个引用映射到同一 key 只算一次匹配，重复次数以 DiffInconsistencyWarning 提示。
若存储中有多个对象规范化后为同一 key（仅大小写不同），它们整体随该 key 分类，
每个对象各计一次，因此 matched + |orphans| == objects 按对象成立，
matched_keys + |missing| == references 按 key 成立。
"""

import logging
import warnings
from collections import OrderedDict
from typing import Dict, Iterable, List

from .errors import DiffInconsistencyWarning
from .keys import normalize_key
from .models import FileReference, ObjectRecord, ReconciliationResult

logger = logging.getLogger(__name__)


def diff(references: Iterable[FileReference], objects: Iterable[ObjectRecord]) -> ReconciliationResult:
    expected: "OrderedDict[str, FileReference]" = OrderedDict()
    duplicates = 0
    for ref in references:
        norm = normalize_key(ref.expected_key)
        if norm in expected:
            duplicates += 1
            logger.debug(
                f"重复引用 {norm}: {ref.entity_type}:{ref.entity_id}.{ref.field_name} "
                f"与 {expected[norm].entity_type}:{expected[norm].entity_id}.{expected[norm].field_name}"
            )
            continue
        expected[norm] = ref

    actual: Dict[str, List[ObjectRecord]] = {}
    collisions = 0
    for obj in objects:
        group = actual.setdefault(normalize_key(obj.key), [])
        if group:
            collisions += 1
        group.append(obj)

    result = ReconciliationResult(
        expected_count=len(expected),
        actual_count=sum(len(group) for group in actual.values()),
        duplicate_references=duplicates,
        object_key_collisions=collisions,
    )
    for norm, group in actual.items():
        if norm in expected:
            result.matched_keys += 1
            result.matched_count += len(group)
        else:
            result.orphans.extend(group)
    result.orphans.sort(key=lambda o: o.key)
    result.missing = [ref for norm, ref in expected.items() if norm not in actual]

    if duplicates:
        warnings.warn(
            f"{duplicates} 条引用与其他引用指向同一 key（已合并计算）",
            DiffInconsistencyWarning,
            stacklevel=2,
        )
        logger.info(f"重复引用 {duplicates} 条（仅提示）")
    if collisions:
        logger.warning(f"{collisions} 个对象与其他对象的 key 仅大小写或分隔符不同")
    logger.info(
        f"差异计算: matched={result.matched_count} orphans={len(result.orphans)} "
        f"missing={len(result.missing)}"
    )
    return result
