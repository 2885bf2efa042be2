from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from cv_crawler import app as app_module
from cv_crawler.app import app
from cv_crawler.engine import FetchResult


class PageFetcher:
    def __init__(self, payload: dict) -> None:
        self.payload = payload

    def fetch(self, url, headers, proxy, timeout=None) -> FetchResult:  # noqa: ANN001
        body = self.payload if url.endswith("page=1") else {"results": []}
        return FetchResult(url=url, status_code=200, text=json.dumps(body), elapsed_ms=12.0)

    def probe(self, source) -> float:  # noqa: ANN001
        return 8.0


@pytest.fixture
def runner(monkeypatch) -> CliRunner:
    monkeypatch.setattr(app_module.console, "width", 200)
    return CliRunner()


@pytest.fixture
def configured(temp_config_repository, sample_source_config, monkeypatch):
    temp_config_repository.save_source(sample_source_config())
    original = app_module.build_state

    def build_with_fake_fetcher(verbose: bool):
        state = original(verbose)
        state.orchestrator.fetcher = PageFetcher(
            {"results": [{"id": 1, "name": "Jane Doe", "email": "jane@example.com", "skills": ["Python"]}]}
        )
        return state

    monkeypatch.setattr(app_module, "build_state", build_with_fake_fetcher)
    return temp_config_repository


def test_source_list_without_sources(runner, home) -> None:
    result = runner.invoke(app, ["source", "list"])
    assert result.exit_code == 0, result.stdout
    assert "No sources configured" in result.stdout


def test_source_list_and_toggle(runner, configured) -> None:
    result = runner.invoke(app, ["source", "list"])
    assert result.exit_code == 0, result.stdout
    assert "portal" in result.stdout

    result = runner.invoke(app, ["source", "disable", "portal"])
    assert result.exit_code == 0, result.stdout
    assert "portal is paused" in result.stdout


def test_source_health(runner, configured) -> None:
    result = runner.invoke(app, ["source", "health"])
    assert result.exit_code == 0, result.stdout
    assert "healthy" in result.stdout


def test_job_create_and_list(runner, configured) -> None:
    result = runner.invoke(app, ["job", "create", "-s", "portal", "--max-pages", "2", "--name", "nightly"])
    assert result.exit_code == 0, result.stdout
    assert "Created job" in result.stdout

    result = runner.invoke(app, ["job", "list"])
    assert result.exit_code == 0, result.stdout
    assert "nightly" in result.stdout
    assert "pending" in result.stdout


def test_job_create_unknown_source_fails(runner, configured) -> None:
    result = runner.invoke(app, ["job", "create", "-s", "nowhere"])
    assert result.exit_code == 1
    assert "Unknown source" in result.stdout


def test_job_create_and_run_ingests_records(runner, configured) -> None:
    result = runner.invoke(app, ["job", "create", "-s", "portal", "--max-pages", "3", "--run"])
    assert result.exit_code == 0, result.stdout
    assert "finished as completed" in result.stdout

    result = runner.invoke(app, ["records", "query", "--skill", "python"])
    assert result.exit_code == 0, result.stdout
    assert "Jane Doe" in result.stdout


def test_job_commands_report_missing_job(runner, configured) -> None:
    for command in ("progress", "pause", "errors"):
        result = runner.invoke(app, ["job", command, "missing"])
        assert result.exit_code == 1
        assert "Unknown job" in result.stdout


def test_records_query_empty(runner, configured) -> None:
    result = runner.invoke(app, ["records", "query"])
    assert result.exit_code == 0, result.stdout
    assert "No records match." in result.stdout


def test_records_query_rejects_bad_dates(runner, configured) -> None:
    result = runner.invoke(app, ["records", "query", "--from", "yesterday"])
    assert result.exit_code != 0


def test_reports_and_logs(runner, configured) -> None:
    result = runner.invoke(app, ["report", "show"])
    assert result.exit_code == 0, result.stdout
    assert "No reports generated yet." in result.stdout

    result = runner.invoke(app, ["report", "generate"])
    assert result.exit_code == 0, result.stdout
    assert "Quality score" in result.stdout

    result = runner.invoke(app, ["dedup", "reviews"])
    assert "Review queue is empty." in result.stdout

    result = runner.invoke(app, ["log", "purge"])
    assert result.exit_code == 0, result.stdout
    assert "Purged 0 expired log entries." in result.stdout
