# -*- coding: utf-8 -*-
"""
pytest 共享 fixtures

- state_dir: 每个测试独立的本地状态目录
- make_ctx: 构造 RunContext（默认 production / force / 小批次）
- frozen_clock: 可手动推进的时钟
- 隔离环境变量，避免开发机上的 LUDORA_* 配置影响测试
"""

from datetime import datetime, timedelta, timezone

import pytest

from ludora_ops.reconcile.orchestrator import RunContext

from fakes import ENV

_ENV_VARS = (
    "LUDORA_RECONCILE_CONFIG",
    "LUDORA_RECONCILE_STATE_DIR",
    "LUDORA_STORE_BACKEND",
    "LUDORA_STORE_ROOT",
    "LUDORA_S3_BUCKET",
    "LUDORA_S3_ENDPOINT",
    "LUDORA_S3_REGION",
    "LUDORA_S3_ACCESS_KEY",
    "LUDORA_S3_SECRET_KEY",
    "LUDORA_S3_VERIFY_SSL",
    "POSTGRES_DSN",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # 默认配置查找路径包含 ~/.ludora，指向临时目录
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)


class FrozenClock:
    """可推进的时钟"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@pytest.fixture
def frozen_clock():
    return FrozenClock(datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def make_ctx(state_dir):
    def _make(**overrides) -> RunContext:
        params = dict(
            environment=ENV,
            run_id="run-1",
            force=True,
            batch_size=2,
            workers=2,
            state_dir=state_dir,
        )
        params.update(overrides)
        return RunContext(**params)

    return _make
