from __future__ import annotations

import pytest

from graphfeed.domain.models import SourceRecord
from graphfeed.domain.stream_name import StreamName
from graphfeed.domain.transform import ContextView, CorrelationContext

ORGS = StreamName(origin="example", name="orgs")


def _org(org_id, login):
    return SourceRecord(stream=ORGS.as_string, data={"id": org_id, "login": login})


def test_get_returns_recorded_record():
    context = CorrelationContext()
    record = _org(1, "acme")

    context.record(ORGS, 1, record)

    assert context.get(ORGS, 1) is record
    assert context.get("example__orgs", "1") is record


def test_missing_key_returns_none():
    context = CorrelationContext()
    context.record(ORGS, 1, _org(1, "acme"))

    assert context.get(ORGS, 2) is None
    assert context.get(ORGS, None) is None
    assert context.get("example__repos", 1) is None
    assert context.all("example__repos") == []


def test_last_write_wins_and_keeps_insertion_order():
    context = CorrelationContext()
    context.record(ORGS, 1, _org(1, "first"))
    context.record(ORGS, 2, _org(2, "other"))
    context.record(ORGS, 1, _org(1, "second"))

    assert context.get(ORGS, 1).data["login"] == "second"
    assert [r.data["login"] for r in context.all(ORGS)] == ["second", "other"]
    assert context.size() == 2


def test_all_is_a_snapshot():
    context = CorrelationContext()
    context.record(ORGS, 1, _org(1, "acme"))
    snapshot = context.all(ORGS)

    context.record(ORGS, 2, _org(2, "globex"))

    assert len(snapshot) == 1
    assert len(context.all(ORGS)) == 2


def test_stats_counts_per_stream():
    context = CorrelationContext()
    context.record(ORGS, 1, _org(1, "acme"))
    context.record(ORGS, 2, _org(2, "globex"))

    assert context.stats() == {"example__orgs": {"count": 2}}
    assert context.stats(include_keys=True)["example__orgs"]["keys"] == ["1", "2"]


def test_view_is_read_only():
    context = CorrelationContext()
    context.record(ORGS, 1, _org(1, "acme"))
    view = ContextView(context)

    assert view.get(ORGS, 1).data["login"] == "acme"
    assert view.streams() == ["example__orgs"]
    assert not hasattr(view, "record")


def test_source_record_data_is_immutable():
    record = _org(1, "acme")
    with pytest.raises(TypeError):
        record.data["login"] = "changed"
    assert record.data["login"] == "acme"
