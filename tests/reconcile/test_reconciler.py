# -*- coding: utf-8 -*-
"""
差异计算测试
"""

import warnings

import pytest

from ludora_ops.reconcile.errors import DiffInconsistencyWarning
from ludora_ops.reconcile.models import FileReference, ObjectRecord, SourceKind
from ludora_ops.reconcile.reconciler import diff


def ref(key, entity_id="1", field_name="image"):
    return FileReference(
        entity_type="product",
        entity_id=entity_id,
        field_name=field_name,
        source_kind=SourceKind.STRUCTURED,
        expected_key=key,
    )


def obj(key, size=1):
    return ObjectRecord(key=key, size_bytes=size)


def assert_invariants(result):
    assert result.matched_count + len(result.orphans) == result.actual_count
    assert result.matched_keys + len(result.missing) == result.expected_count


class TestDiff:
    def test_example_scenario(self):
        references = [ref("p/1/img.jpg", "a"), ref("p/2/doc.pdf", "b")]
        objects = [obj("p/1/img.jpg"), obj("p/2/doc.pdf"), obj("p/3/stray.mp4")]
        result = diff(references, objects)
        assert result.matched_count == 2
        assert [o.key for o in result.orphans] == ["p/3/stray.mp4"]
        assert result.missing == []

    def test_classification_completeness(self):
        """100 条引用、120 个对象、重叠 90 -> matched 90 / orphans 30 / missing 10"""
        references = [ref(f"k/{i:03d}", str(i)) for i in range(100)]
        objects = [obj(f"k/{i:03d}") for i in range(10, 130)]
        result = diff(references, objects)
        assert result.matched_count == 90
        assert len(result.orphans) == 30
        assert len(result.missing) == 10
        assert_invariants(result)

    def test_empty_inputs(self):
        result = diff([], [])
        assert result.counts() == {
            "references": 0,
            "objects": 0,
            "matched": 0,
            "matched_keys": 0,
            "orphans": 0,
            "missing": 0,
            "duplicate_references": 0,
        }

    def test_normalization(self):
        """大小写与多余分隔符不同的 key 视为同一个"""
        result = diff([ref("/P/1//IMG.jpg")], [obj("p/1/img.JPG")])
        assert result.matched_count == 1
        assert result.orphans == []
        assert result.missing == []

    def test_missing_keeps_reference_order(self):
        result = diff([ref("b", "2"), ref("a", "1")], [])
        assert [r.expected_key for r in result.missing] == ["b", "a"]

    def test_orphans_sorted(self):
        result = diff([], [obj("z"), obj("a"), obj("m")])
        assert [o.key for o in result.orphans] == ["a", "m", "z"]

    def test_colliding_orphans_each_classified_once(self):
        """仅大小写不同的对象整体随规范化 key 分类，每个对象各计一次"""
        result = diff([ref("p/2/b.jpg")], [obj("p/1/A.jpg"), obj("p/1/a.jpg"), obj("p/2/b.jpg")])
        assert len(result.orphans) == 2
        assert result.actual_count == 3
        assert result.matched_count == 1
        assert result.object_key_collisions == 1
        assert_invariants(result)

    def test_colliding_matched_objects_each_counted(self):
        result = diff([ref("p/1/a.jpg"), ref("p/9/gone.jpg")], [obj("p/1/A.jpg"), obj("p/1/a.jpg")])
        assert result.orphans == []
        assert result.matched_count == 2
        assert result.matched_keys == 1
        assert [r.expected_key for r in result.missing] == ["p/9/gone.jpg"]
        assert_invariants(result)


class TestDuplicateReferences:
    def test_duplicate_emits_warning(self):
        references = [ref("p/1/img.jpg", "1", "image"), ref("p/1/img.jpg", "1", "image_url")]
        with pytest.warns(DiffInconsistencyWarning):
            result = diff(references, [obj("p/1/img.jpg")])
        assert result.matched_count == 1
        assert result.duplicate_references == 1
        assert result.expected_count == 1

    def test_no_warning_without_duplicates(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", DiffInconsistencyWarning)
            diff([ref("a"), ref("b")], [obj("a")])
