from __future__ import annotations

import json
import logging

import pytest

from graphfeed.domain.exceptions import CircularDependency, WriteError
from graphfeed.domain.ports.store import RevisionHandle
from graphfeed.domain.reporting.collector import ReportCollector
from graphfeed.domain.stream_name import StreamName
from graphfeed.domain.transform import BaseTransformUnit, TransformRegistry
from graphfeed.infra.sources.catalog_reader import parse_catalog
from graphfeed.infra.sources.message_reader import JsonlMessageSource, iter_lines
from graphfeed.transforms import BUILTIN_TRANSFORMS, PassthroughTransform
from graphfeed.usecases.ingest_usecase import IngestUseCase

logger = logging.getLogger("graphfeed.tests.ingest")


class DummyStore:
    def __init__(self, fail_on: str | None = None) -> None:
        self.calls: list[tuple] = []
        self.entries: list[dict] = []
        self.fail_on = fail_on

    def open_revision(self, origin, delete_models=()):
        self.calls.append(("open", origin, tuple(delete_models)))
        if self.fail_on == "open":
            raise WriteError("open failed", operation="open")
        return RevisionHandle(uid="rev-1", origin=origin)

    def append_entries(self, handle, entries):
        self.calls.append(("append", len(entries)))
        if self.fail_on == "append":
            raise WriteError("append failed", operation="append")
        self.entries.extend(entries)

    def close_revision(self, handle, commit):
        self.calls.append(("close", commit))

    @property
    def closes(self) -> list[bool]:
        return [call[1] for call in self.calls if call[0] == "close"]


def rec(stream: str, data: dict) -> str:
    return json.dumps({"type": "RECORD", "record": {"stream": stream, "data": data, "emitted_at": 1}})


def state(cursor: int) -> str:
    return json.dumps({"type": "STATE", "state": {"data": {"cursor": cursor}}})


def org(org_id: int, login: str) -> str:
    return rec("example__orgs", {"id": org_id, "login": login, "name": login.title()})


def repo(repo_id: int, name: str, org_id: int) -> str:
    return rec("example__repos", {"id": repo_id, "name": name, "org_id": org_id})


def run(lines, store=None, registry=None, **kwargs):
    usecase = IngestUseCase(
        registry or TransformRegistry(factories=BUILTIN_TRANSFORMS),
        store,
        **kwargs,
    )
    return usecase.run(iter_lines(lines), logger=logger, run_id="test-run")


def entries_of(store: DummyStore, entry_type: str) -> list[dict]:
    return [entry[entry_type] for entry in store.entries if entry_type in entry]


def test_processed_plus_errored_equals_records_under_skip():
    store = DummyStore()
    lines = [
        org(1, "acme"),
        org(2, "globex"),
        org(3, "initech"),
        repo(10, "rocket", 1),
        rec("example__unknown", {"id": 1}),
        "{broken",
        repo(11, "anvil", 2),
    ]

    result = run(lines, store)

    stats = result.stats
    assert stats.records_processed == 5
    assert stats.records_errored == 2
    assert stats.records_processed + stats.records_errored == len(lines)
    assert stats.errored_by_code == {"UNDEFINED_STREAM": 1, "MALFORMED_INPUT": 1}
    assert len(store.entries) == 5
    assert store.closes == [True]
    assert result.committed is True
    assert result.status == "PARTIAL"
    assert result.exit_code == 0


@pytest.mark.parametrize("defer", [True, False])
def test_missing_org_degrades_gracefully(defer):
    store = DummyStore()
    lines = [
        org(1, "acme"),
        org(2, "globex"),
        org(3, "initech"),
        repo(10, "rocket", 1),
        repo(11, "ghost", 99),
    ]

    result = run(lines, store, defer_dependents=defer)

    repos = entries_of(store, "vcs_Repository")
    assert result.stats.records_errored == 0
    assert repos[0]["organization"] == {"uid": "acme"}
    assert repos[1]["name"] == "ghost"
    assert "organization" not in repos[1]
    assert repos[1]["source"] == "example"


def test_last_write_wins_for_dependent_lookup():
    store = DummyStore()
    lines = [org(1, "first"), org(1, "second"), repo(10, "rocket", 1)]

    run(lines, store, defer_dependents=False)

    assert entries_of(store, "vcs_Repository")[0]["organization"] == {"uid": "second"}


def test_deferred_dependents_see_later_records():
    lines = [repo(10, "rocket", 1), org(1, "acme")]

    deferred_store = DummyStore()
    deferred = run(lines, deferred_store, defer_dependents=True)
    single_pass_store = DummyStore()
    run(lines, single_pass_store, defer_dependents=False)

    assert deferred.stats.records_deferred == 1
    assert entries_of(deferred_store, "vcs_Repository")[0]["organization"] == {"uid": "acme"}
    assert "organization" not in entries_of(single_pass_store, "vcs_Repository")[0]


def test_fail_policy_halts_and_discards_revision():
    store = DummyStore()
    lines = [
        org(1, "acme"),
        rec("example__repos", {"id": 10}),
        org(2, "globex"),
        state(5),
    ]

    result = run(lines, store, strategy="FAIL", defer_dependents=False)

    assert result.exit_code == 1
    assert result.aborted is True
    assert result.committed is False
    assert result.status == "FAILED"
    assert store.closes == [False]
    assert store.entries == []
    assert result.stats.records_processed < result.stats.messages_read
    assert result.stats.records_processed == 1
    assert result.first_error.code == "CONVERSION_ERROR"
    assert result.checkpoints == []


@pytest.mark.parametrize(
    "bad_line, code",
    [
        ("{broken", "MALFORMED_INPUT"),
        (rec("example__unknown", {"id": 1}), "UNDEFINED_STREAM"),
        (rec("nounderscore", {"id": 1}), "MALFORMED_INPUT"),
        (rec("x__a__b__cd__ef", {"id": 1}), "MALFORMED_INPUT"),
    ],
)
def test_fail_policy_applies_to_every_record_error(bad_line, code):
    store = DummyStore()

    result = run([org(1, "acme"), bad_line, org(2, "globex")], store, strategy="FAIL")

    assert result.exit_code == 1
    assert result.first_error.code == code
    assert store.closes == [False]
    assert result.stats.records_processed == 1


def test_dry_run_matches_live_counts_without_network():
    lines = [
        org(1, "acme"),
        repo(10, "rocket", 1),
        rec("example__unknown", {"id": 1}),
        rec("example__repos", {"id": 11}),
        repo(12, "anvil", 7),
    ]
    live_store = DummyStore()
    dry_store = DummyStore()

    live = run(lines, live_store)
    dry = run(lines, dry_store, dry_run=True)

    assert dry.stats.records_written == live.stats.records_written == 3
    assert dry.stats.records_errored == live.stats.records_errored == 2
    assert dry_store.calls == []
    assert dry.revision_uid == "dry-run"
    assert dry.committed is True
    assert dry.exit_code == 0


def test_write_error_is_fatal_even_under_skip():
    store = DummyStore(fail_on="append")

    result = run([org(1, "acme"), org(2, "globex")], store, batch_size=1)

    assert result.exit_code == 2
    assert result.fatal_error is not None
    assert result.committed is False
    assert store.closes == [False]


def test_open_failure_is_fatal_and_reads_nothing():
    store = DummyStore(fail_on="open")

    result = run([org(1, "acme")], store)

    assert result.exit_code == 2
    assert result.stats.messages_read == 0
    assert store.closes == []


def test_checkpoints_are_returned_after_commit_in_order():
    store = DummyStore()

    result = run([state(1), org(1, "acme"), state(2)], store)

    assert [c.data["cursor"] for c in result.checkpoints] == [1, 2]
    assert result.stats.checkpoints_read == 2


def test_context_is_updated_before_convert():
    seen: list[bool] = []

    class SelfLookup(BaseTransformUnit):
        stream = StreamName(origin="test", name="items")

        def convert(self, record, context):
            seen.append(context.get(self.stream, record.data["id"]) is record)
            return []

    registry = TransformRegistry()
    registry.register("test__items", SelfLookup())

    run([rec("test__items", {"id": 1}), rec("test__items", {"no_id": True})], DummyStore(), registry=registry)

    assert seen[0] is True


def test_record_without_key_is_processed_but_not_indexed():
    store = DummyStore()
    usecase = IngestUseCase(TransformRegistry(factories=BUILTIN_TRANSFORMS), store)

    result = usecase.run(iter_lines([rec("example__orgs", {"login": "nokey"})]), logger=logger, run_id="r")

    assert result.stats.records_processed == 1
    assert usecase.context.size() == 0


def test_invalid_result_shape_is_conversion_error():
    class BadShape(BaseTransformUnit):
        stream = StreamName(origin="test", name="bad")

        def convert(self, record, context):
            return {"not": "a list"}

    registry = TransformRegistry()
    registry.register("test__bad", BadShape())

    result = run([rec("test__bad", {"id": 1})], DummyStore(), registry=registry)

    assert result.stats.errored_by_code == {"CONVERSION_ERROR": 1}
    assert result.first_error.message == "Invalid results: not an array"


def test_completion_hook_entries_are_written():
    class Summary(BaseTransformUnit):
        stream = StreamName(origin="test", name="items")

        def convert(self, record, context):
            return []

        def on_processing_complete(self, context):
            return [("test_Summary", {"count": len(context.all(self.stream))})]

    registry = TransformRegistry()
    registry.register("test__items", Summary())
    store = DummyStore()

    run([rec("test__items", {"id": 1}), rec("test__items", {"id": 2})], store, registry=registry)

    assert entries_of(store, "test_Summary") == [{"count": 2, "source": "test"}]


def test_fallback_transform_handles_unknown_streams():
    registry = TransformRegistry(factories=BUILTIN_TRANSFORMS, fallback=PassthroughTransform("raw_Record"))
    store = DummyStore()

    result = run([rec("jira__issues", {"id": 1, "key": "PRJ-1"})], store, registry=registry)

    assert result.stats.records_errored == 0
    assert entries_of(store, "raw_Record") == [{"id": 1, "key": "PRJ-1", "source": "jira"}]
    assert registry.resolve("jira__issues").stream is None
    assert store.closes == [True]


def test_catalog_controls_streams_origin_and_delete_models():
    catalog = parse_catalog(
        {
            "streams": [
                {"stream": {"name": "mygh__example__orgs"}, "destination_sync_mode": "overwrite"},
                {"stream": {"name": "mygh__example__repos"}, "destination_sync_mode": "append"},
            ]
        }
    )
    store = DummyStore()

    result = run(
        [
            rec("mygh__example__orgs", {"id": 1, "login": "acme"}),
            rec("mygh__example__users", {"id": 1}),
        ],
        store,
        catalog=catalog,
    )

    assert store.calls[0] == ("open", "mygh", ("vcs_Organization",))
    assert result.stats.errored_by_code == {"UNDEFINED_STREAM": 1}


def test_circular_dependency_fails_before_open():
    class Dependent(BaseTransformUnit):
        def __init__(self, name: str, depends_on: str) -> None:
            self.stream = StreamName(origin="test", name=name)
            self._deps = (StreamName(origin="test", name=depends_on),)

        def dependencies(self):
            return self._deps

        def convert(self, record, context):
            return []

    registry = TransformRegistry()
    registry.register("test__first", Dependent("first", "second"))
    registry.register("test__second", Dependent("second", "third"))
    catalog = parse_catalog(
        {
            "streams": [
                {"stream": {"name": "test__first"}, "destination_sync_mode": "append"},
                {"stream": {"name": "test__second"}, "destination_sync_mode": "append"},
            ]
        }
    )
    store = DummyStore()

    with pytest.raises(CircularDependency):
        run([rec("test__first", {"id": 1})], store, registry=registry, catalog=catalog)
    assert store.calls == []


def test_report_receives_failures_and_stats():
    store = DummyStore()
    report = ReportCollector(run_id="r", command="write")
    usecase = IngestUseCase(TransformRegistry(factories=BUILTIN_TRANSFORMS), store)

    usecase.run(iter_lines([org(1, "acme"), "{broken"]), logger=logger, run_id="r", report=report)

    envelope = report.build()
    assert envelope.status == "PARTIAL"
    assert envelope.summary.records_passed == 1
    assert envelope.summary.records_failed == 1
    assert envelope.items[0].row_ref.line_no == 2
    assert envelope.context["stats"]["records_written"] == 1
    assert envelope.meta.revision_uid == "rev-1"


def test_invalid_utf8_line_is_skipped_as_malformed_input(tmp_path):
    path = tmp_path / "input.jsonl"
    path.write_bytes(
        (org(1, "acme") + "\n").encode("utf-8")
        + b'{"type": "RECORD", "record": {"stream": "example__orgs", "data": {"login": "\xff\xfe"}}}\n'
        + (org(2, "globex") + "\n").encode("utf-8")
    )
    store = DummyStore()
    usecase = IngestUseCase(TransformRegistry(factories=BUILTIN_TRANSFORMS), store, dry_run=True)

    result = usecase.run(JsonlMessageSource(str(path)), logger=logger, run_id="r")

    assert result.committed is True
    assert result.exit_code == 0
    assert result.stats.records_processed == 2
    assert result.stats.records_errored == 1
    assert result.stats.errored_by_code == {"MALFORMED_INPUT": 1}
    assert result.first_error.line_no == 2


def test_fail_policy_halts_on_deferred_record_error():
    store = DummyStore()
    lines = [
        rec("example__repos", {"id": 10, "org_id": 1}),
        org(1, "acme"),
        repo(11, "anvil", 1),
    ]

    result = run(lines, store, strategy="FAIL", defer_dependents=True)

    assert result.stats.records_deferred == 2
    assert result.exit_code == 1
    assert result.aborted is True
    assert result.committed is False
    assert result.first_error.code == "CONVERSION_ERROR"
    assert result.first_error.line_no == 1
    assert store.closes == [False]
    assert result.stats.records_processed == 1


def test_completion_failure_keeps_record_counts_and_is_counted_separately():
    class BrokenSummary(BaseTransformUnit):
        stream = StreamName(origin="test", name="items")

        def convert(self, record, context):
            return [("test_Item", {"id": record.data["id"]})]

        def on_processing_complete(self, context):
            raise RuntimeError("summary unavailable")

    registry = TransformRegistry()
    registry.register("test__items", BrokenSummary())
    store = DummyStore()
    lines = [rec("test__items", {"id": 1}), "{broken", rec("test__items", {"id": 2})]

    result = run(lines, store, registry=registry)

    stats = result.stats
    assert stats.records_processed + stats.records_errored == len(lines)
    assert stats.records_errored == 1
    assert stats.completions_errored == 1
    assert stats.records_skipped == 1
    assert result.status == "PARTIAL"
    assert result.committed is True
    assert store.closes == [True]


def test_completion_failure_under_fail_policy_aborts():
    class BrokenSummary(BaseTransformUnit):
        stream = StreamName(origin="test", name="items")

        def convert(self, record, context):
            return []

        def on_processing_complete(self, context):
            raise RuntimeError("summary unavailable")

    registry = TransformRegistry()
    registry.register("test__items", BrokenSummary())
    store = DummyStore()

    result = run([rec("test__items", {"id": 1})], store, registry=registry, strategy="FAIL")

    assert result.exit_code == 1
    assert result.stats.records_errored == 0
    assert result.stats.completions_errored == 1
    assert store.closes == [False]
