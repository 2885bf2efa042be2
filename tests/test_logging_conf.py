from __future__ import annotations

from cv_crawler.logging_conf import log_path, tail_log


def test_log_path_follows_home(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("CV_CRAWLER_HOME", str(tmp_path))
    assert log_path() == tmp_path.resolve() / "logs" / "pipeline.log"
    assert log_path("jobboard") == tmp_path.resolve() / "logs" / "sources" / "jobboard.log"


def test_tail_log_returns_last_lines(tmp_path) -> None:
    path = tmp_path / "pipeline.log"
    assert tail_log(path) == []
    path.write_text("".join(f"line {i}\n" for i in range(10)), encoding="utf-8")
    assert tail_log(path, 3) == ["line 7\n", "line 8\n", "line 9\n"]
