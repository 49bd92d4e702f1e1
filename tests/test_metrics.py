"""Tests for utils/metrics: log_metric and the summary readers."""

from __future__ import annotations

import sqlite3

import pytest

import utils.metrics as metrics_mod


class TestLogMetric:
    def test_log_metric_does_not_raise(self, tmp_db):
        metrics_mod.log_metric("extract", 1.23, items=3)

    def test_logged_metric_appears_in_summary(self, tmp_db):
        metrics_mod.log_metric("analyze", 2.0)
        summary = metrics_mod.get_metrics_summary()
        assert summary["analyze"]["total"] == 1
        assert summary["analyze"]["errors"] == 0
        assert summary["analyze"]["avg_s"] == 2.0

    def test_multiple_logs_aggregated(self, tmp_db):
        metrics_mod.log_metric("generate", 1.0)
        metrics_mod.log_metric("generate", 3.0, outcome="error", detail="timeout")
        summary = metrics_mod.get_metrics_summary()
        assert summary["generate"]["total"] == 2
        assert summary["generate"]["errors"] == 1
        assert summary["generate"]["avg_s"] == 2.0
        assert summary["generate"]["min_s"] == 1.0
        assert summary["generate"]["max_s"] == 3.0

    def test_different_operations_separated(self, tmp_db):
        metrics_mod.log_metric("chat_start", 1.5)
        metrics_mod.log_metric("chat_turn", 3.0)
        summary = metrics_mod.get_metrics_summary()
        assert set(summary) == {"chat_start", "chat_turn"}

    def test_get_recent_metrics_newest_first(self, tmp_db):
        metrics_mod.log_metric("extract", 0.5)
        metrics_mod.log_metric("analyze", 0.7)
        recent = metrics_mod.get_recent_metrics(limit=10)
        assert [r["operation"] for r in recent] == ["analyze", "extract"]
        assert recent[0]["outcome"] == "ok"

    def test_get_recent_metrics_limit_respected(self, tmp_db):
        for i in range(10):
            metrics_mod.log_metric("chat_turn", float(i))
        assert len(metrics_mod.get_recent_metrics(limit=5)) == 5

    def test_meta_json_stored_and_retrieved(self, tmp_db):
        metrics_mod.log_metric("extract", 1.0, items=7, detail="未知")
        meta = metrics_mod.get_recent_metrics(limit=1)[0]["meta"]
        assert meta == {"items": 7, "detail": "未知"}

    def test_log_metric_silent_on_db_error(self, monkeypatch):
        def _fail():
            raise sqlite3.OperationalError("no db")

        monkeypatch.setattr(metrics_mod, "_open_db", _fail)
        metrics_mod.log_metric("analyze", 1.0)

    def test_readers_return_empty_on_db_error(self, tmp_path, monkeypatch):
        monkeypatch.setattr(metrics_mod, "DB_PATH", tmp_path / "no_tables.db")
        assert metrics_mod.get_recent_metrics() == []
        assert metrics_mod.get_metrics_summary() == {}

    def test_get_metrics_summary_empty_db_returns_empty(self, tmp_db):
        assert metrics_mod.get_metrics_summary() == {}

    def test_recent_metrics_filtered_by_operation(self, tmp_db):
        metrics_mod.log_metric("extract", 0.5)
        metrics_mod.log_metric("analyze", 0.7)
        recent = metrics_mod.get_recent_metrics(operation="extract")
        assert [r["operation"] for r in recent] == ["extract"]


class TestTrackOperation:
    def test_success_recorded_with_details(self, tmp_db):
        with metrics_mod.track_operation("extract") as meta:
            meta["items"] = 2
        row = metrics_mod.get_recent_metrics(limit=1)[0]
        assert row["operation"] == "extract"
        assert row["outcome"] == "ok"
        assert row["meta"] == {"items": 2}

    def test_failure_recorded_and_reraised(self, tmp_db):
        with pytest.raises(RuntimeError):
            with metrics_mod.track_operation("generate"):
                raise RuntimeError("timeout")
        row = metrics_mod.get_recent_metrics(limit=1)[0]
        assert row["outcome"] == "error"
        assert row["meta"]["detail"] == "timeout"
        assert metrics_mod.get_metrics_summary()["generate"]["error_rate"] == 1.0
