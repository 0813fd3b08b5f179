"""
ludora_ops.reconcile.registry - Ludora 实体 / 路径登记表

实体类型 -> (表, 提取策略) 的查找表，收集器只按此表分发，不含任何实体特定分支。

三层资产路径:
    marketing  {env}/public/image/{product_type}/{product_id}/{filename}
    content    {env}/private/document/file/{file_id}/{filename}
    system     {env}/public/image/school/{school_id}/{filename}

新增实体时只需在 DEFAULT_ENTITY_SPECS 中追加一项。
"""

from typing import Dict, Sequence, Tuple

from .keys import VISIBILITY_PRIVATE, VISIBILITY_PUBLIC
from .strategies import (
    EntityTypeSpec,
    JsonbPathSpec,
    LegacyUrlSpec,
    OwnerSpec,
    PolymorphicSpec,
    SlotOverride,
    StructuredFieldSpec,
)

# 资产类型
ASSET_IMAGE = "image"
ASSET_MARKETING_VIDEO = "marketing_video"
ASSET_DOCUMENT = "document"
ASSET_CONTENT_VIDEO = "content_video"
ASSET_AUDIO = "audio"


_FILE_FIELDS = (
    StructuredFieldSpec(
        field_name="file",
        flag_column="has_file",
        filename_column="file_name",
        visibility=VISIBILITY_PRIVATE,
        asset_class=ASSET_DOCUMENT,
        slot="file",
    ),
)

_WORKSHOP_FIELDS = (
    StructuredFieldSpec(
        field_name="video",
        flag_column="has_video",
        filename_column="video_filename",
        visibility=VISIBILITY_PRIVATE,
        asset_class=ASSET_CONTENT_VIDEO,
        slot="video",
    ),
    LegacyUrlSpec(
        field_name="video_file_url",
        url_column="video_file_url",
        visibility=VISIBILITY_PRIVATE,
        asset_class=ASSET_CONTENT_VIDEO,
        slot="video",
    ),
)


PRODUCT = EntityTypeSpec(
    entity_type="product",
    table="product",
    fields=(
        # 营销图片的路径片段取自 product_type（file / workshop / course ...）
        StructuredFieldSpec(
            field_name="image",
            flag_column="has_image",
            filename_column="image_filename",
            visibility=VISIBILITY_PUBLIC,
            asset_class=ASSET_IMAGE,
            slot="image",
            entity_type_column="product_type",
        ),
        StructuredFieldSpec(
            field_name="marketing_video",
            flag_column="has_marketing_video",
            filename_column="marketing_video_filename",
            visibility=VISIBILITY_PUBLIC,
            asset_class=ASSET_MARKETING_VIDEO,
            slot="marketing_video",
            entity_type_column="product_type",
        ),
        LegacyUrlSpec(
            field_name="image_url",
            url_column="image_url",
            visibility=VISIBILITY_PUBLIC,
            asset_class=ASSET_IMAGE,
            slot="image",
            entity_type_column="product_type",
        ),
        # product 通过 (product_type, entity_id) 指向实际内容实体
        PolymorphicSpec(
            field_name="content",
            type_column="product_type",
            id_column="entity_id",
            owners={
                "file": OwnerSpec(table="file", fields=_FILE_FIELDS),
                "workshop": OwnerSpec(table="workshop", fields=_WORKSHOP_FIELDS),
            },
        ),
    ),
)

LESSON_PLAN = EntityTypeSpec(
    entity_type="lesson_plan",
    table="lessonplan",
    fields=(
        JsonbPathSpec(
            field_name="file_configs",
            column="file_configs",
            visibility=VISIBILITY_PRIVATE,
            asset_class=ASSET_DOCUMENT,
            slot_overrides={"audio": SlotOverride(asset_class=ASSET_AUDIO)},
        ),
    ),
)

COURSE = EntityTypeSpec(
    entity_type="course",
    table="course",
    fields=(
        JsonbPathSpec(
            field_name="course_modules",
            column="course_modules",
            visibility=VISIBILITY_PRIVATE,
            asset_class=ASSET_CONTENT_VIDEO,
            slot_overrides={
                "documents": SlotOverride(asset_class=ASSET_DOCUMENT),
                "audio": SlotOverride(asset_class=ASSET_AUDIO),
            },
        ),
    ),
)

SCHOOL = EntityTypeSpec(
    entity_type="school",
    table="school",
    fields=(
        StructuredFieldSpec(
            field_name="logo",
            flag_column="has_logo",
            filename_column="logo_filename",
            visibility=VISIBILITY_PUBLIC,
            asset_class=ASSET_IMAGE,
            slot="logo",
        ),
    ),
)

SETTINGS = EntityTypeSpec(
    entity_type="settings",
    table="settings",
    fields=(
        StructuredFieldSpec(
            field_name="logo",
            flag_column="has_logo",
            filename_column="logo_filename",
            visibility=VISIBILITY_PUBLIC,
            asset_class=ASSET_IMAGE,
            slot="logo",
        ),
        LegacyUrlSpec(
            field_name="logo_url",
            url_column="logo_url",
            visibility=VISIBILITY_PUBLIC,
            asset_class=ASSET_IMAGE,
            slot="logo",
        ),
    ),
)

AUDIO_FILE = EntityTypeSpec(
    entity_type="audiofile",
    table="audiofile",
    fields=(
        StructuredFieldSpec(
            field_name="file",
            flag_column="has_file",
            filename_column="file_name",
            visibility=VISIBILITY_PRIVATE,
            asset_class=ASSET_AUDIO,
            slot="file",
        ),
        LegacyUrlSpec(
            field_name="file_url",
            url_column="file_url",
            visibility=VISIBILITY_PRIVATE,
            asset_class=ASSET_AUDIO,
            slot="file",
        ),
    ),
)


DEFAULT_ENTITY_SPECS: Tuple[EntityTypeSpec, ...] = (
    PRODUCT,
    LESSON_PLAN,
    COURSE,
    SCHOOL,
    SETTINGS,
    AUDIO_FILE,
)


def build_registry(specs: Sequence[EntityTypeSpec] = DEFAULT_ENTITY_SPECS) -> Dict[str, EntityTypeSpec]:
    """entity_type -> EntityTypeSpec；重复登记视为编程错误"""
    registry: Dict[str, EntityTypeSpec] = {}
    for spec in specs:
        if spec.entity_type in registry:
            raise ValueError(f"实体类型重复登记: {spec.entity_type}")
        registry[spec.entity_type] = spec
    return registry
