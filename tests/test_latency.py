from __future__ import annotations

import pytest

from loadgen.latency import ERROR, GOOD, LatencyMap


def test_timed_block_tags_errors(latency):
    with latency.timed("POST /acme/new-reg"):
        pass
    with pytest.raises(RuntimeError):
        with latency.timed("POST /acme/new-reg"):
            raise RuntimeError("boom")

    assert [record.state for record in latency.records()] == [GOOD, ERROR]


def test_summaries_per_call_class(latency):
    latency.add("HEAD /acme/new-reg", 10.0, 10.010, GOOD)
    latency.add("HEAD /acme/new-reg", 11.0, 11.030, ERROR)
    latency.add("POST /acme/new-cert", 12.0, 12.5, GOOD)

    summary = latency.summaries()

    assert summary["HEAD /acme/new-reg"]["count"] == 2
    assert summary["HEAD /acme/new-reg"]["good"] == 1
    assert summary["HEAD /acme/new-reg"]["error"] == 1
    assert summary["HEAD /acme/new-reg"]["mean_ms"] == pytest.approx(20.0)
    assert summary["POST /acme/new-cert"]["p50_ms"] == pytest.approx(500.0)


def test_dataframe_window_keeps_calls_started_inside_it(latency):
    latency.started, latency.stopped = 100.0, 200.0
    latency.add("GET /acme/cert", 90.0, 101.0, GOOD)
    latency.add("GET /acme/cert", 150.0, 250.0, GOOD)

    assert list(latency.build_dataframe()["started"]) == [150.0]
    assert len(latency.build_dataframe(filter_window=False)) == 2


def test_empty_map_has_no_summary(latency):
    assert latency.summaries() == {}
    assert latency.build_dataframe().empty


def test_report_can_be_reloaded(tmp_path, latency):
    latency.start()
    latency.add("POST /acme/revoke-cert", 1.0, 1.2, ERROR)
    latency.stop()
    path = tmp_path / "reports" / "latency.json"

    latency.dump(path)
    loaded = LatencyMap.load(path)

    assert loaded.title == "test run"
    assert loaded.started == latency.started
    assert loaded.summaries() == latency.summaries()


def test_timed_block_can_fail_without_raising(latency):
    with latency.timed("GET /acme/authz") as call:
        call.fail()
    with latency.timed("GET /acme/authz") as call:
        pass

    assert [record.state for record in latency.records()] == [ERROR, GOOD]
