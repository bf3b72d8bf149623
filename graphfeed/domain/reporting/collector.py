from __future__ import annotations

from dataclasses import asdict
from typing import Any, Iterable, Mapping

from graphfeed.common.time_utils import getNowIso
from graphfeed.domain.models import DiagnosticStage, RowRef, ValidationErrorItem
from graphfeed.domain.reporting.models import (
    ReportDiagnostic,
    ReportEnvelope,
    ReportItem,
    ReportMeta,
    ReportSummary,
)

STATUS_SUCCESS = "SUCCESS"
STATUS_PARTIAL = "PARTIAL"
STATUS_FAILED = "FAILED"


class ReportCollector:
    """
    Назначение/ответственность:
        Единый сборщик отчётов для всех команд.

    Инварианты/гарантии:
        - Счётчики summary учитывают все записи, items - не больше items_limit.
        - Явно выставленный status имеет приоритет над вычисленным.
    """

    def __init__(self, run_id: str, command: str, started_at: str | None = None) -> None:
        self.meta = ReportMeta(
            run_id=run_id,
            graph=None,
            command=command,
            started_at=started_at or getNowIso(),
        )
        self.summary = ReportSummary()
        self.items: list[ReportItem] = []
        self.context: dict[str, Any] = {}
        self.status: str | None = None

    def set_meta(
        self,
        *,
        graph: str | None = None,
        revision_uid: str | None = None,
        dry_run: bool | None = None,
        items_limit: int | None = None,
        app_version: str | None = None,
    ) -> None:
        if graph is not None:
            self.meta.graph = graph
        if revision_uid is not None:
            self.meta.revision_uid = revision_uid
        if dry_run is not None:
            self.meta.dry_run = dry_run
        if items_limit is not None:
            self.meta.items_limit = items_limit
        if app_version is not None:
            self.meta.app_version = app_version

    def set_context(self, name: str, value: dict[str, Any]) -> None:
        self.context[name] = value

    def add_op(self, name: str, *, ok: int = 0, failed: int = 0, count: int = 0) -> None:
        entry = self.summary.ops.setdefault(name, {"ok": 0, "failed": 0, "count": 0})
        entry["ok"] += ok
        entry["failed"] += failed
        entry["count"] += count

    def add_passed(self, entries: int = 0) -> None:
        """Успешная запись входа: в items не попадает, только счётчики."""
        self.summary.records_total += 1
        self.summary.records_passed += 1
        self.summary.entries_written += entries

    def add_item(
        self,
        *,
        status: str,
        row_ref: RowRef | None = None,
        payload: Mapping[str, Any] | None = None,
        errors: Iterable[ValidationErrorItem] | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        error_list = list(errors or [])

        self.summary.records_total += 1
        if status == STATUS_FAILED:
            self.summary.records_failed += 1
        else:
            self.summary.records_passed += 1
        self.summary.errors_total += len(error_list)
        for error in error_list:
            self._count_stage(error.stage)

        if self._should_store_item():
            self.items.append(
                ReportItem(
                    status=status,
                    row_ref=row_ref,
                    payload=payload,
                    diagnostics=[self._from_error(err) for err in error_list],
                    meta=meta or {},
                )
            )
        else:
            self.meta.items_truncated = True

    def finish(self, finished_at: str | None = None, duration_ms: int | None = None) -> None:
        self.meta.finished_at = finished_at or getNowIso()
        self.meta.duration_ms = duration_ms
        if self.status is None:
            self.status = self._derive_status()

    def build(self) -> ReportEnvelope:
        return ReportEnvelope(
            status=self.status or self._derive_status(),
            meta=self.meta,
            summary=self.summary,
            items=self.items,
            context=self.context,
        )

    def _should_store_item(self) -> bool:
        limit = self.meta.items_limit
        if limit is None:
            return True
        return len(self.items) < limit

    def _derive_status(self) -> str:
        if self.summary.errors_total == 0:
            return STATUS_SUCCESS
        if self.summary.records_passed > 0:
            return STATUS_PARTIAL
        return STATUS_FAILED

    def _count_stage(self, stage: DiagnosticStage) -> None:
        key = stage.value if isinstance(stage, DiagnosticStage) else str(stage)
        entry = self.summary.by_stage.setdefault(key, {"errors_total": 0})
        entry["errors_total"] += 1

    @staticmethod
    def _from_error(item: ValidationErrorItem) -> ReportDiagnostic:
        return ReportDiagnostic(
            severity="error",
            stage=item.stage,
            code=item.code,
            field=item.field,
            message=item.message,
        )


def asdict_report(envelope: ReportEnvelope) -> dict[str, Any]:
    """
    Назначение:
        Упрощённая сериализация отчёта в JSON-совместимый dict.
    """
    return {
        "status": envelope.status,
        "meta": asdict(envelope.meta),
        "summary": asdict(envelope.summary),
        "items": [
            {
                "status": item.status,
                "row_ref": asdict(item.row_ref) if item.row_ref else None,
                "payload": dict(item.payload) if item.payload is not None else None,
                "diagnostics": [
                    {**asdict(diag), "stage": diag.stage.value if isinstance(diag.stage, DiagnosticStage) else diag.stage}
                    for diag in item.diagnostics
                ],
                "meta": item.meta,
            }
            for item in envelope.items
        ],
        "context": envelope.context,
    }
