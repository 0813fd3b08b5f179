# -*- coding: utf-8 -*-
"""
引用收集器测试

测试覆盖:
1. 按登记表收集全部实体类型
2. 多态关系解析到所属实体
3. 单条记录错误跳过并计数（该记录的引用一条都不产出）
4. 关系库查询失败向上抛出
"""

import pytest

from ludora_ops.reconcile.collector import ReferenceCollector
from ludora_ops.reconcile.errors import EntitySourceError
from ludora_ops.reconcile.models import SourceKind
from ludora_ops.reconcile.registry import SCHOOL, build_registry

from fakes import ENV, InMemoryEntitySource, school_key, school_row


def collect(source, **kwargs):
    collector = ReferenceCollector(source, **kwargs)
    references = list(collector.collect(ENV))
    return collector, references


class TestRegistry:
    def test_duplicate_entity_type_rejected(self):
        with pytest.raises(ValueError):
            build_registry([SCHOOL, SCHOOL])


class TestCollect:
    def test_all_entity_types(self):
        source = InMemoryEntitySource(
            {
                "school": [school_row(1)],
                "lessonplan": [{"id": 7, "file_configs": {"worksheet": {"filename": "w.pdf"}}}],
                "audiofile": [{"id": 2, "has_file": True, "file_name": "song.mp3"}],
            }
        )
        collector, references = collect(source)
        assert sorted(r.expected_key for r in references) == [
            "production/private/audio/audiofile/2/song.mp3",
            "production/private/document/lesson_plan/7/w.pdf",
            school_key(1),
        ]
        assert collector.stats.records_scanned == 3
        assert collector.stats.references == 3

    def test_restricted_specs(self):
        source = InMemoryEntitySource(
            {
                "school": [school_row(1)],
                "audiofile": [{"id": 2, "has_file": True, "file_name": "song.mp3"}],
            }
        )
        _, references = collect(source, specs=[SCHOOL])
        assert [r.expected_key for r in references] == [school_key(1)]

    def test_polymorphic_owner_resolved(self):
        """product -> (product_type, entity_id) -> file 表中的实际文件"""
        source = InMemoryEntitySource(
            {
                "product": [
                    {
                        "id": 1,
                        "product_type": "file",
                        "entity_id": 10,
                        "has_image": True,
                        "image_filename": "cover.jpg",
                    }
                ],
                "file": [{"id": 10, "has_file": True, "file_name": "doc.pdf"}],
            }
        )
        _, references = collect(source)
        by_key = {r.expected_key: r for r in references}
        assert set(by_key) == {
            "production/public/image/file/1/cover.jpg",
            "production/private/document/file/10/doc.pdf",
        }
        owned = by_key["production/private/document/file/10/doc.pdf"]
        assert owned.source_kind == SourceKind.POLYMORPHIC
        assert owned.entity_type == "file"
        assert owned.entity_id == "10"

    def test_polymorphic_owner_legacy_field(self):
        source = InMemoryEntitySource(
            {
                "product": [{"id": 1, "product_type": "workshop", "entity_id": 4}],
                "workshop": [{"id": 4, "has_video": False, "video_file_url": "rec.mp4"}],
            }
        )
        _, references = collect(source)
        assert [r.expected_key for r in references] == [
            "production/private/content_video/workshop/4/rec.mp4"
        ]

    def test_unknown_polymorphic_type_ignored(self):
        source = InMemoryEntitySource({"product": [{"id": 1, "product_type": "course", "entity_id": 3}]})
        collector, references = collect(source)
        assert references == []
        assert collector.stats.collection_errors == 0


class TestRecordErrors:
    def test_missing_owner_skips_whole_record(self):
        """所属实体不存在: 该 product 的引用一条都不产出"""
        source = InMemoryEntitySource(
            {
                "product": [
                    {
                        "id": 1,
                        "product_type": "file",
                        "entity_id": 99,
                        "has_image": True,
                        "image_filename": "cover.jpg",
                    }
                ],
                "school": [school_row(2)],
            }
        )
        collector, references = collect(source)
        assert [r.expected_key for r in references] == [school_key(2)]
        assert collector.stats.collection_errors == 1

    def test_malformed_record_does_not_stop_collection(self):
        source = InMemoryEntitySource(
            {
                "lessonplan": [
                    {"id": 1, "file_configs": "{broken"},
                    {"id": 2, "file_configs": {"worksheet": {"filename": "ok.pdf"}}},
                ]
            }
        )
        collector, references = collect(source)
        assert [r.entity_id for r in references] == ["2"]
        assert collector.stats.collection_errors == 1
        assert collector.stats.records_scanned == 2

    def test_missing_primary_key(self):
        source = InMemoryEntitySource({"school": [{"id": None, "has_logo": True, "logo_filename": "x.png"}]})
        collector, references = collect(source)
        assert references == []
        assert collector.stats.collection_errors == 1

    def test_data_quality_warnings_counted(self):
        source = InMemoryEntitySource(
            {
                "school": [{"id": 1, "has_logo": True, "logo_filename": None}],
                "settings": [{"id": 1, "has_logo": False, "logo_url": "HAS_IMAGE"}],
            }
        )
        collector, references = collect(source)
        assert references == []
        assert collector.stats.data_quality_warnings == 2
        assert collector.stats.collection_errors == 0

    def test_superseded_legacy_counted(self):
        source = InMemoryEntitySource(
            {"settings": [{"id": 1, "has_logo": True, "logo_filename": "a.png", "logo_url": "old.png"}]}
        )
        collector, references = collect(source)
        assert len(references) == 1
        assert collector.stats.superseded_legacy == 1

    def test_stats_reset_between_runs(self):
        source = InMemoryEntitySource({"school": [school_row(1)]})
        collector = ReferenceCollector(source)
        list(collector.collect(ENV))
        list(collector.collect(ENV))
        assert collector.stats.references == 1


class TestSourceFailure:
    def test_entity_source_error_propagates(self):
        source = InMemoryEntitySource({"school": [school_row(1)]})
        source.fail_tables.add("school")
        with pytest.raises(EntitySourceError):
            collect(source)

    def test_owner_lookup_failure_propagates(self):
        source = InMemoryEntitySource({"product": [{"id": 1, "product_type": "file", "entity_id": 10}]})
        source.fail_tables.add("file")
        with pytest.raises(EntitySourceError):
            collect(source)
