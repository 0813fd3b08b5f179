# -*- coding: utf-8 -*-
"""
配置加载测试

测试覆盖:
1. 配置文件查找优先级（--config > 环境变量 > ./.ludora）
2. 环境变量覆盖文件中的单项配置
3. 校验错误带 section/key 信息
4. 时长解析
"""

from datetime import timedelta

import pytest

from ludora_ops.reconcile.config import (
    AppConfig,
    Config,
    load_app_config,
    parse_duration,
)
from ludora_ops.reconcile.errors import ConfigError, ConfigNotFoundError, ConfigParseError


def write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


class TestParseDuration:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("90s", timedelta(seconds=90)),
            ("45m", timedelta(minutes=45)),
            ("36h", timedelta(hours=36)),
            ("2d", timedelta(days=2)),
            ("1w", timedelta(weeks=1)),
            ("120", timedelta(seconds=120)),
            (300, timedelta(seconds=300)),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["abc", "10x", "-5m", True])
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            parse_duration(value, "reconcile.check_threshold")


class TestConfigPriority:
    def test_defaults_without_file(self):
        """没有配置文件时使用默认值"""
        config = load_app_config()
        assert config.reconcile.batch_size == 100
        assert config.reconcile.check_threshold == timedelta(hours=24)
        assert config.reconcile.quarantine_ttl == timedelta(days=30)
        assert config.object_store.backend == "s3"

    def test_local_file_found(self, tmp_path):
        write_toml(tmp_path / ".ludora" / "reconcile.toml", "[reconcile]\nbatch_size = 7\n")
        assert load_app_config().reconcile.batch_size == 7

    def test_env_path_beats_local_file(self, tmp_path, monkeypatch):
        write_toml(tmp_path / ".ludora" / "reconcile.toml", "[reconcile]\nbatch_size = 7\n")
        env_file = write_toml(tmp_path / "env.toml", "[reconcile]\nbatch_size = 8\n")
        monkeypatch.setenv("LUDORA_RECONCILE_CONFIG", str(env_file))
        assert load_app_config().reconcile.batch_size == 8

    def test_explicit_path_beats_env(self, tmp_path, monkeypatch):
        env_file = write_toml(tmp_path / "env.toml", "[reconcile]\nbatch_size = 8\n")
        cli_file = write_toml(tmp_path / "cli.toml", "[reconcile]\nbatch_size = 9\n")
        monkeypatch.setenv("LUDORA_RECONCILE_CONFIG", str(env_file))
        assert load_app_config(str(cli_file)).reconcile.batch_size == 9

    def test_explicit_missing_file(self, tmp_path):
        with pytest.raises(ConfigNotFoundError):
            Config(str(tmp_path / "missing.toml"))

    def test_parse_error(self, tmp_path):
        bad = write_toml(tmp_path / "bad.toml", "[reconcile\nbatch_size = ")
        with pytest.raises(ConfigParseError):
            load_app_config(str(bad))

    def test_get_dotted_key(self, tmp_path):
        path = write_toml(tmp_path / "c.toml", '[object_store]\nbucket = "files"\n')
        config = Config(str(path))
        assert config.get("object_store.bucket") == "files"
        assert config.get("object_store.missing", "x") == "x"


class TestEnvOverrides:
    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = write_toml(
            tmp_path / "c.toml",
            '[object_store]\nbucket = "from-file"\n[postgres]\ndsn = "postgresql://file"\n',
        )
        monkeypatch.setenv("LUDORA_S3_BUCKET", "from-env")
        monkeypatch.setenv("POSTGRES_DSN", "postgresql://env")
        config = load_app_config(str(path))
        assert config.object_store.bucket == "from-env"
        assert config.postgres.dsn == "postgresql://env"

    def test_verify_ssl_env(self, monkeypatch):
        monkeypatch.setenv("LUDORA_S3_VERIFY_SSL", "false")
        assert load_app_config().object_store.verify_ssl is False

    def test_state_dir_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LUDORA_RECONCILE_STATE_DIR", str(tmp_path / "s"))
        assert load_app_config().reconcile.state_dir == str(tmp_path / "s")


class TestValidation:
    def test_invalid_backend(self):
        with pytest.raises(ConfigError) as exc_info:
            AppConfig.from_dict({"object_store": {"backend": "ftp"}})
        assert exc_info.value.details["section"] == "object_store"
        assert exc_info.value.details["key"] == "backend"

    def test_invalid_batch_size(self):
        with pytest.raises(ConfigError) as exc_info:
            AppConfig.from_dict({"reconcile": {"batch_size": 0}})
        assert exc_info.value.details["key"] == "batch_size"

    def test_invalid_jitter(self):
        with pytest.raises(ConfigError):
            AppConfig.from_dict({"retry": {"jitter_factor": 1.5}})

    def test_invalid_log_level(self):
        with pytest.raises(ConfigError):
            AppConfig.from_dict({"logging": {"level": "LOUD"}})

    def test_duration_strings_in_file(self):
        config = AppConfig.from_dict({"reconcile": {"check_threshold": "12h", "lock_lease": "30m"}})
        assert config.reconcile.check_threshold == timedelta(hours=12)
        assert config.reconcile.lock_lease == timedelta(minutes=30)
