from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from graphfeed.domain.models import DiagnosticStage, RowRef


@dataclass
class ReportMeta:
    """
    Назначение:
        Метаданные запуска команды.
    """

    run_id: str
    graph: str | None
    command: str
    started_at: str
    finished_at: str | None = None
    duration_ms: int | None = None
    revision_uid: str | None = None
    dry_run: bool = False
    items_limit: int | None = None
    items_truncated: bool = False
    app_version: str | None = None


@dataclass
class ReportSummary:
    """
    Назначение:
        Счётчики выполнения по записям входа.
    """

    records_total: int = 0
    records_passed: int = 0
    records_failed: int = 0
    entries_written: int = 0
    errors_total: int = 0
    by_stage: dict[str, dict[str, int]] = field(default_factory=dict)
    ops: dict[str, dict[str, int]] = field(default_factory=dict)


@dataclass(frozen=True)
class ReportDiagnostic:
    severity: str
    stage: DiagnosticStage
    code: str
    field: str | None
    message: str


@dataclass
class ReportItem:
    """
    Назначение:
        Единица отчёта, привязанная к строке входа.
    """

    status: str
    row_ref: RowRef | None = None
    payload: Mapping[str, Any] | None = None
    diagnostics: list[ReportDiagnostic] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class ReportEnvelope:
    status: str
    meta: ReportMeta
    summary: ReportSummary
    items: list[ReportItem]
    context: dict[str, Any] = field(default_factory=dict)
