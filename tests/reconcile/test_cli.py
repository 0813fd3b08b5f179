# -*- coding: utf-8 -*-
"""
test_cli.py - ludora-reconcile CLI 测试

测试覆盖:
1. run: dry-run JSON 报告、--force 隔离、非交互终端拒绝确认
2. 退出码: 0 / 1 / 2
3. status: 检查点、运行锁、缓存
4. release-lock
5. 参数校验（无效环境、无效时长）

组件构造函数 build_entity_source / build_object_store 被替换为内存实现。
"""

import json
import logging
from datetime import timedelta

import pytest
from typer.testing import CliRunner

from ludora_ops.reconcile import cli
from ludora_ops.reconcile.cli import app
from ludora_ops.reconcile.keys import lock_key
from ludora_ops.reconcile.models import ProgressCheckpoint
from ludora_ops.reconcile.progress import ProgressTracker
from ludora_ops.reconcile.run_lock import RunLock

from fakes import ENV, build_school_fixture, school_key


@pytest.fixture
def runner():
    """创建 Typer CLI 测试 runner"""
    return CliRunner()


@pytest.fixture(autouse=True)
def _reset_root_logging():
    # setup_logging 绑定了 CliRunner 的 stderr，测试结束后移除
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)


@pytest.fixture
def cli_state_dir(tmp_path, monkeypatch):
    path = tmp_path / "cli-state"
    monkeypatch.setenv("LUDORA_RECONCILE_STATE_DIR", str(path))
    return path


@pytest.fixture
def fixture_components(monkeypatch, cli_state_dir):
    """referenced=[1]，存储中有 1/2/3（2、3 为孤儿）"""
    source, store = build_school_fixture(referenced=[1], stored=[1, 2, 3])
    monkeypatch.setattr(cli, "build_entity_source", lambda config: source)
    monkeypatch.setattr(cli, "build_object_store", lambda config: store)
    return source, store


def parse_json(output):
    """取输出中最后一个 JSON 对象（忽略混入的日志行）"""
    lines = [line for line in output.splitlines() if line.startswith("{")]
    assert lines, output
    return json.loads(lines[-1])


class TestRunCommand:
    def test_dry_run_report(self, runner, fixture_components):
        source, store = fixture_components
        result = runner.invoke(app, ["run", "--env", "production", "--dry-run", "--run-id", "cli-1"])
        assert result.exit_code == 0, result.output
        report = parse_json(result.stdout)
        assert report["ok"] is True
        assert report["state"] == "COMPLETE"
        assert report["run_id"] == "cli-1"
        assert report["counts"]["orphans"] == 2
        assert report["counts"]["matched"] == 1
        assert report["sample_orphans"] == [school_key(2), school_key(3)]
        assert store.mutations() == []
        assert source.closed is True

    def test_force_quarantines(self, runner, fixture_components, cli_state_dir):
        _, store = fixture_components
        result = runner.invoke(app, ["run", "-e", "production", "--force", "--batch-size", "1", "--run-id", "cli-2"])
        assert result.exit_code == 0, result.output
        report = parse_json(result.stdout)
        assert report["counts"]["quarantined"] == 2
        assert report["counts"]["planned_batches"] == 2
        assert school_key(2) not in store.objects
        assert ProgressTracker(cli_state_dir, ENV).load("cli-2").batches_completed == 2

    def test_non_interactive_without_force_declines(self, runner, fixture_components):
        """非交互终端且未指定 --force: 不修改任何对象"""
        _, store = fixture_components
        result = runner.invoke(app, ["run", "--env", "production"])
        assert result.exit_code == 0, result.output
        report = parse_json(result.stdout)
        assert report["declined"] is True
        assert store.mutations() == []

    def test_partial_failure_exit_code(self, runner, fixture_components):
        _, store = fixture_components
        store.fail_delete_keys.add(school_key(3))
        result = runner.invoke(app, ["run", "--env", "production", "--force"])
        assert result.exit_code == 2
        report = parse_json(result.stdout)
        assert report["ok"] is False
        assert report["counts"]["failed"] == 1
        assert report["errors"][0]["key"] == school_key(3)

    def test_fatal_exit_code(self, runner, fixture_components):
        source, _ = fixture_components
        source.fail_tables.add("school")
        result = runner.invoke(app, ["run", "--env", "production", "--force"])
        assert result.exit_code == 1
        report = parse_json(result.stdout)
        assert report["state"] == "FAILED"
        assert report["errors"][0]["code"] == "ENTITY_SOURCE_ERROR"

    def test_invalid_environment(self, runner, fixture_components):
        result = runner.invoke(app, ["run", "--env", "qa"])
        assert result.exit_code != 0

    def test_invalid_duration(self, runner, fixture_components):
        result = runner.invoke(app, ["run", "--env", "production", "--check-threshold", "soon"])
        assert result.exit_code == 1
        assert parse_json(result.stdout)["code"] == "CONFIG_ERROR"

    def test_missing_config_file(self, runner, fixture_components, tmp_path):
        result = runner.invoke(
            app, ["run", "--env", "production", "--config", str(tmp_path / "missing.toml")]
        )
        assert result.exit_code == 1
        assert parse_json(result.stdout)["code"] == "CONFIG_NOT_FOUND"


class TestStatusCommand:
    def test_status(self, runner, fixture_components, cli_state_dir):
        _, store = fixture_components
        ProgressTracker(cli_state_dir, ENV).save(ProgressCheckpoint(run_id="run-a", environment=ENV))
        RunLock(store, ENV, timedelta(hours=1)).acquire("run-a")

        result = runner.invoke(app, ["status", "--env", "production"])
        assert result.exit_code == 0, result.output
        status = parse_json(result.stdout)
        assert status["ok"] is True
        assert status["resumable"] == ["run-a"]
        assert status["lock"]["run_id"] == "run-a"
        assert status["cache"]["entries"] == 0

    def test_status_empty(self, runner, fixture_components):
        result = runner.invoke(app, ["status", "--env", "staging"])
        status = parse_json(result.stdout)
        assert status["checkpoints"] == []
        assert status["lock"] is None


class TestReleaseLockCommand:
    def test_release(self, runner, fixture_components):
        _, store = fixture_components
        RunLock(store, ENV, timedelta(hours=1)).acquire("stuck-run")
        result = runner.invoke(app, ["release-lock", "--env", "production"])
        assert result.exit_code == 0, result.output
        assert parse_json(result.stdout)["released"]["run_id"] == "stuck-run"
        assert lock_key(ENV) not in store.objects

    def test_release_without_lock(self, runner, fixture_components):
        result = runner.invoke(app, ["release-lock", "--env", "production"])
        assert result.exit_code == 0
        payload = parse_json(result.stdout)
        assert payload["ok"] is True
        assert payload["released"] is None
