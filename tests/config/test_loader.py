from __future__ import annotations

from pathlib import Path

import pytest

from cv_crawler.config import ProxyConfig, ScheduleConfig, ScheduleType
from cv_crawler.config.loader import ConfigLocator, ConfigRepository, _slugify
from cv_crawler.config.models import GlobalConfig


def test_config_locator_uses_env_and_creates_directories(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CV_CRAWLER_HOME", str(tmp_path))
    locator = ConfigLocator()
    assert locator.project_root == tmp_path.resolve()
    for path in (locator.data_dir, locator.sources_dir, locator.logs_dir):
        assert path.exists()
    assert locator.global_config_path() == locator.data_dir / "global_config.yaml"


def test_config_repository_global_roundtrip(temp_config_repository: ConfigRepository) -> None:
    config = GlobalConfig(thread_pool_workers=4, rescore_interval=600)
    temp_config_repository.save_global_config(config)
    fresh = ConfigRepository(temp_config_repository.locator)
    loaded = fresh.load_global_config()
    assert loaded == config
    assert fresh.database_path() == (temp_config_repository.locator.project_root / "data" / "pipeline.db").resolve()


def test_load_global_config_writes_defaults(temp_config_repository: ConfigRepository) -> None:
    config = temp_config_repository.load_global_config()
    assert config == GlobalConfig()
    assert temp_config_repository.locator.global_config_path().exists()


def test_config_repository_source_cycle(temp_config_repository: ConfigRepository, sample_source_config) -> None:
    source = sample_source_config(
        source_id="Tech Board",
        proxies=[ProxyConfig(host="10.0.0.2", port=3128)],
        schedule=ScheduleConfig(type=ScheduleType.CRON, value="0 * * * *"),
    )
    path = temp_config_repository.save_source(source)
    assert path.name == "tech-board.yaml"
    loaded = temp_config_repository.load_source("Tech Board")
    assert loaded == source
    assert [item.source_id for item in temp_config_repository.list_sources()] == ["Tech Board"]
    temp_config_repository.delete_source("Tech Board")
    assert temp_config_repository.list_sources() == []


def test_config_repository_missing_source(temp_config_repository: ConfigRepository) -> None:
    with pytest.raises(FileNotFoundError):
        temp_config_repository.load_source("missing")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Example Source", "example-source"),
        ("Already-Slug", "already-slug"),
        ("C++ Archive", "c---archive"),
    ],
)
def test_slugify_behaviour(raw: str, expected: str) -> None:
    assert _slugify(raw) == expected
