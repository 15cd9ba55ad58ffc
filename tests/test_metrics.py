"""Tests for operation timing and metrics export."""

import logging

import pytest

from chatcore import metrics as metrics_module
from chatcore.metrics import Metrics, TimingStats, metrics, timed_block, timed_operation


class TestTimingStats:
    def test_record(self):
        stats = TimingStats()
        stats.record(10.0)
        stats.record(30.0, failed=True)

        assert stats.count == 2
        assert stats.errors == 1
        assert stats.avg_ms == 20.0
        assert stats.to_dict()["min_ms"] == 10.0
        assert stats.to_dict()["max_ms"] == 30.0

    def test_empty(self):
        assert TimingStats().to_dict()["min_ms"] == 0


class TestMetrics:
    def test_to_dict_sections(self):
        collector = Metrics()
        collector.record_operation("send_message", 1.0)
        collector.record_request("GET /health", 2.0)
        collector.record_cache_miss("unread")

        data = collector.to_dict()
        assert set(data) == {"uptime_seconds", "operations", "cache", "requests", "counters"}
        assert data["operations"]["send_message"]["count"] == 1
        assert data["requests"]["GET /health"]["count"] == 1
        assert data["cache"]["unread"]["misses"] == 1

    def test_reset(self):
        collector = Metrics()
        collector.record_operation("x", 1.0)
        collector.reset()
        assert collector.to_dict()["operations"] == {}


class TestTimedOperation:
    def setup_method(self):
        metrics.reset()

    def test_decorator_records(self):
        @timed_operation("sample")
        def work(x):
            return x * 2

        assert work(21) == 42
        assert metrics.to_dict()["operations"]["sample"]["count"] == 1

    def test_decorator_counts_errors(self):
        @timed_operation("failing")
        def work():
            raise ValueError("nope")

        with pytest.raises(ValueError):
            work()
        stats = metrics.to_dict()["operations"]["failing"]
        assert stats["count"] == 1
        assert stats["errors"] == 1

    def test_block(self):
        with timed_block("block"):
            pass
        assert metrics.to_dict()["operations"]["block"]["count"] == 1

    def test_slow_operation_logged(self, monkeypatch, caplog):
        monkeypatch.setattr(metrics_module, "SLOW_OPERATION_MS", -1.0)
        with caplog.at_level(logging.WARNING, logger="chatcore.metrics"):
            with timed_block("sluggish"):
                pass
        assert "Slow operation: sluggish" in caplog.text

    def test_components_are_timed(self, chat_with_users):
        chat_with_users.send_direct_message("alice", "bob", "hi")
        chat_with_users.mark_direct_read("bob", "alice")
        operations = metrics.to_dict()["operations"]
        for name in ("resolve_or_create_direct", "send_message", "mark_read", "count_unread"):
            assert operations[name]["count"] >= 1


class TestCounters:
    def setup_method(self):
        metrics.reset()

    def test_increment(self):
        collector = Metrics()
        collector.increment("messages_sent")
        collector.increment("messages_sent", 2)
        assert collector.to_dict()["counters"] == {"messages_sent": 3}
        collector.reset()
        assert collector.to_dict()["counters"] == {}

    def test_cache_hit_rate(self):
        collector = Metrics()
        collector.record_cache_hit("unread")
        collector.record_cache_hit("unread")
        collector.record_cache_hit("unread")
        collector.record_cache_miss("unread")
        assert collector.to_dict()["cache"]["unread"] == {
            "hits": 3,
            "misses": 1,
            "hit_rate_pct": 75.0,
        }

    def test_chat_events_counted(self, chat_with_users):
        sent = chat_with_users.send_direct_message("alice", "bob", "hi")
        chat_with_users.send_direct_message("bob", "alice", "hey")
        chat_with_users.edit_message("alice", sent.message.id, "hi!")
        chat_with_users.delete_message("alice", sent.message.id)

        counters = metrics.to_dict()["counters"]
        assert counters["conversations_created"] == 1
        assert counters["messages_sent"] == 2
        assert counters["messages_edited"] == 1
        assert counters["messages_deleted"] == 1

    def test_repeat_delete_not_counted(self, chat_with_users):
        sent = chat_with_users.send_direct_message("alice", "bob", "hi")
        chat_with_users.delete_message("alice", sent.message.id)
        chat_with_users.delete_message("alice", sent.message.id)
        assert metrics.to_dict()["counters"]["messages_deleted"] == 1
