from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from graphfeed.domain.error_codes import ErrorCode
from graphfeed.domain.exceptions import (
    CircularDependency,
    ConfigError,
    ConversionError,
    MalformedInput,
    MalformedStreamName,
    RecordError,
    UndefinedStream,
    WriteError,
)
from graphfeed.domain.models import (
    Checkpoint,
    DiagnosticStage,
    MessageKind,
    RowRef,
    SourceRecord,
    ValidationErrorItem,
)
from graphfeed.domain.policy import InvalidRecordStrategy, PolicyDecision, RecordOutcome, decide
from graphfeed.domain.ports.store import RevisionStoreProtocol
from graphfeed.domain.reporting.collector import (
    STATUS_FAILED,
    STATUS_PARTIAL,
    STATUS_SUCCESS,
    ReportCollector,
)
from graphfeed.domain.stats import RunStats
from graphfeed.domain.stream_name import StreamName
from graphfeed.domain.transform import (
    ContextView,
    CorrelationContext,
    TransformRegistry,
    TransformUnit,
    normalize_entries,
)
from graphfeed.infra.logging.setup import log_event
from graphfeed.infra.sources.catalog_reader import Catalog, SyncMode
from graphfeed.infra.sources.message_reader import RawLine, parse_message
from graphfeed.usecases.revision_sink import RevisionSink

DEFAULT_REVISION_ORIGIN = "graphfeed"
CONTEXT_STATS_INTERVAL = 1000

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_FATAL = 2

_STAGE_BY_CODE = {
    ErrorCode.MALFORMED_INPUT.value: DiagnosticStage.READ,
    ErrorCode.UNDEFINED_STREAM.value: DiagnosticStage.RESOLVE,
    ErrorCode.CONVERSION_ERROR.value: DiagnosticStage.CONVERT,
}


class LoopState(str, Enum):
    READING = "READING"
    PROCESSING = "PROCESSING"
    DRAINING = "DRAINING"


@dataclass
class IngestPlan:
    """
    Назначение:
        Подготовленные до открытия ревизии параметры: origin и модели на удаление.
    """

    origin: str
    delete_models: list[str] = field(default_factory=list)
    units_by_stream: dict[str, str] = field(default_factory=dict)


@dataclass
class IngestResult:
    """
    Назначение:
        Итог запуска цикла приёма.

    Инварианты/гарантии:
        - checkpoints непустые только при committed=True.
        - exit_code: 0 - commit (или dry run), 1 - остановка по FAIL, 2 - фатальная ошибка записи.
    """

    status: str
    exit_code: int
    stats: RunStats
    revision_uid: str | None = None
    committed: bool = False
    aborted: bool = False
    dry_run: bool = False
    checkpoints: list[Checkpoint] = field(default_factory=list)
    first_error: RecordError | None = None
    fatal_error: WriteError | None = None


@dataclass
class _Deferred:
    record: SourceRecord
    stream: StreamName
    unit: TransformUnit


class IngestUseCase:
    """
    Назначение/ответственность:
        Цикл приёма: чтение строк, маршрутизация записей в трансформеры,
        индексирование в контексте корреляции, политика ошибок и запись
        результата в одну атомарную ревизию.

    Алгоритм:
        READING: следующая строка; конец входа -> DRAINING.
        PROCESSING:
            - STATE копится до закрытия ревизии; прочие сообщения игнорируются.
            - RECORD: имя потока -> трансформер (UndefinedStream при промахе),
              ключ -> контекст до convert(), затем convert() и запись в sink.
            - Записи трансформеров с зависимостями откладываются до DRAINING
              (при defer_dependents=True), ключ индексируется сразу.
        DRAINING: отложенные записи в порядке поступления, затем
            on_processing_complete() каждого трансформера, затем close(commit=True).

    Инварианты/гарантии:
        - Ошибка одной записи не прерывает соседние (SKIP) либо останавливает цикл (FAIL).
        - WriteError фатальна всегда; на любом фатальном пути пробуется close(commit=False).
        - Один реестр и один контекст на запуск.
    """

    def __init__(
        self,
        registry: TransformRegistry,
        store: RevisionStoreProtocol | None,
        *,
        strategy: InvalidRecordStrategy | str = InvalidRecordStrategy.SKIP,
        dry_run: bool = False,
        batch_size: int = 500,
        defer_dependents: bool = True,
        origin: str | None = None,
        catalog: Catalog | None = None,
        stats_interval: int = CONTEXT_STATS_INTERVAL,
    ) -> None:
        self.registry = registry
        self.store = store
        self.strategy = InvalidRecordStrategy.parse(strategy)
        self.dry_run = dry_run
        self.batch_size = batch_size
        self.defer_dependents = defer_dependents
        self.origin = origin
        self.catalog = catalog
        self.stats_interval = stats_interval

        self.context = CorrelationContext()
        self.stats = RunStats()
        self.state = LoopState.READING
        self._view = ContextView(self.context)
        self._deferred: list[_Deferred] = []
        self._checkpoints: list[Checkpoint] = []
        self._first_error: RecordError | None = None

    def prepare(self, logger: logging.Logger, run_id: str) -> IngestPlan:
        """
        Назначение:
            Подготовка до открытия ревизии: origin, модели на удаление по каталогу,
            проверка циклических зависимостей.

        Ошибки:
            ConfigError / CircularDependency.
        """
        plan = IngestPlan(origin=self._resolve_origin())
        if self.catalog is None:
            return plan

        delete_models: set[str] = set()
        dependents: dict[str, list[StreamName]] = {}
        for item in self.catalog.streams:
            try:
                stream = StreamName.from_string(item.name)
            except MalformedStreamName as exc:
                raise ConfigError(f"Invalid catalog stream: {exc.message}") from exc
            unit = self.registry.resolve(stream)
            if unit is None:
                log_event(logger, logging.INFO, run_id, "ingest", f"No transform found for stream {item.name}")
                continue
            plan.units_by_stream[item.name] = type(unit).__name__
            log_event(
                logger,
                logging.INFO,
                run_id,
                "ingest",
                f"Using transform {type(unit).__name__} for stream {item.name}",
                sync_mode=item.sync_mode.value,
                fallback=not self.registry.has_own(stream),
            )
            if item.sync_mode is SyncMode.OVERWRITE:
                delete_models.update(unit.destination_types())
            deps = list(unit.dependencies())
            if deps:
                dependents[stream.as_string] = deps

        for stream_key, deps in dependents.items():
            for dep in deps:
                if dep.as_string in dependents:
                    raise CircularDependency([stream_key, dep.as_string])

        plan.delete_models = sorted(delete_models)
        return plan

    def run(
        self,
        lines: Iterable[tuple[int, RawLine]],
        logger: logging.Logger,
        run_id: str,
        report: ReportCollector | None = None,
    ) -> IngestResult:
        """
        Назначение:
            Полный запуск: prepare -> open -> цикл -> drain -> close.

        Выходные данные:
            IngestResult. ConfigError из prepare() пробрасывается (ревизия ещё не открыта).
        """
        plan = self.prepare(logger, run_id)
        if report is not None:
            report.set_meta(dry_run=self.dry_run)
            report.set_context("plan", {"origin": plan.origin, "delete_models": plan.delete_models})

        sink = RevisionSink(
            self.store,
            self.stats,
            origin=plan.origin,
            delete_models=plan.delete_models,
            batch_size=self.batch_size,
            dry_run=self.dry_run,
        )
        try:
            handle = sink.open()
        except WriteError as exc:
            log_event(logger, logging.ERROR, run_id, "ingest", f"Failed to open revision: {exc}")
            return self._finish(logger, run_id, report, sink, fatal_error=exc)
        log_event(
            logger,
            logging.INFO,
            run_id,
            "ingest",
            "Revision opened",
            revision=handle.uid,
            origin=plan.origin,
            dry_run=self.dry_run,
        )

        aborted = False
        try:
            aborted = self._read_all(lines, sink, logger, run_id, report)
            if not aborted:
                aborted = self._drain(sink, logger, run_id, report)
            if aborted:
                sink.close(False)
                log_event(logger, logging.ERROR, run_id, "ingest", "Processing aborted, revision discarded")
            else:
                sink.close(True)
                if sink.discard_error is not None:
                    log_event(logger, logging.ERROR, run_id, "ingest", f"Discard failed: {sink.discard_error}")
        except WriteError as exc:
            log_event(logger, logging.ERROR, run_id, "ingest", f"Revision write failed: {exc}")
            self._discard(sink, logger, run_id)
            return self._finish(logger, run_id, report, sink, fatal_error=exc)
        except Exception:
            self._discard(sink, logger, run_id)
            raise

        return self._finish(logger, run_id, report, sink, aborted=aborted)

    def _read_all(
        self,
        lines: Iterable[tuple[int, RawLine]],
        sink: RevisionSink,
        logger: logging.Logger,
        run_id: str,
        report: ReportCollector | None,
    ) -> bool:
        for line_no, text in lines:
            self.state = LoopState.PROCESSING
            self.stats.messages_read += 1
            try:
                message = parse_message(text, line_no)
            except MalformedInput as err:
                if self._apply(RecordOutcome.failure(err), None, sink, logger, run_id, report):
                    return True
                self.state = LoopState.READING
                continue

            if message.kind is MessageKind.STATE:
                self.stats.checkpoints_read += 1
                self._checkpoints.append(message.checkpoint)
            elif message.kind is MessageKind.RECORD:
                self.stats.records_read += 1
                outcome = self._process_record(message.record)
                if outcome is not None and self._apply(outcome, message.record, sink, logger, run_id, report):
                    return True
            self.state = LoopState.READING
        self.state = LoopState.DRAINING
        return False

    def _process_record(self, record: SourceRecord) -> RecordOutcome | None:
        """None - запись отложена до DRAINING."""
        try:
            stream = self._parse_stream(record)
            unit = self._resolve_unit(stream, record)
            try:
                key = unit.extract_key(record)
            except Exception as exc:
                raise ConversionError(
                    f"Failed to extract key: {type(exc).__name__}: {exc}",
                    line_no=record.line_no,
                    stream=record.stream,
                ) from exc
            if key is not None:
                self.context.record(stream, key, record)
            if self.defer_dependents and unit.dependencies():
                self._deferred.append(_Deferred(record=record, stream=stream, unit=unit))
                self.stats.records_deferred += 1
                return None
            return self._convert(unit, stream, record)
        except RecordError as err:
            return RecordOutcome.failure(err)

    def _parse_stream(self, record: SourceRecord) -> StreamName:
        try:
            return StreamName.from_string(record.stream)
        except MalformedStreamName as exc:
            raise MalformedInput(exc.message, line_no=record.line_no, stream=record.stream) from exc

    def _resolve_unit(self, stream: StreamName, record: SourceRecord) -> TransformUnit:
        if self.catalog is not None and not self.catalog.contains(record.stream):
            raise UndefinedStream(record.stream, line_no=record.line_no, reason="stream is not in the catalog")
        unit = self.registry.resolve(stream)
        if unit is None:
            raise UndefinedStream(
                record.stream,
                line_no=record.line_no,
                reason=self.registry.load_errors.get(stream.as_string),
            )
        return unit

    def _convert(self, unit: TransformUnit, stream: StreamName, record: SourceRecord) -> RecordOutcome:
        try:
            result = unit.convert(record, self._view)
        except RecordError as err:
            return RecordOutcome.failure(err)
        except Exception as exc:
            return RecordOutcome.failure(
                ConversionError(
                    f"Transform {type(unit).__name__} failed: {type(exc).__name__}: {exc}",
                    line_no=record.line_no,
                    stream=record.stream,
                )
            )
        try:
            entries = normalize_entries(result, default_source=stream.origin)
        except ValueError as exc:
            return RecordOutcome.failure(ConversionError(str(exc), line_no=record.line_no, stream=record.stream))
        return RecordOutcome.success(entries)

    def _drain(
        self,
        sink: RevisionSink,
        logger: logging.Logger,
        run_id: str,
        report: ReportCollector | None,
    ) -> bool:
        self.state = LoopState.DRAINING
        if self._deferred:
            log_event(
                logger,
                logging.INFO,
                run_id,
                "ingest",
                "Processing deferred records",
                deferred=len(self._deferred),
            )
        for item in self._deferred:
            outcome = self._convert(item.unit, item.stream, item.record)
            if self._apply(outcome, item.record, sink, logger, run_id, report):
                return True
        self._deferred.clear()

        for unit in self.registry.resolved_units():
            outcome = self._complete(unit)
            if outcome.ok and not outcome.entries:
                continue
            if self._apply(outcome, None, sink, logger, run_id, report, count_record=False):
                return True

        log_event(logger, logging.INFO, run_id, "ingest", "Context stats", context=self.context.stats())
        return False

    def _complete(self, unit: TransformUnit) -> RecordOutcome:
        stream = unit.stream
        stream_str = stream.as_string if stream is not None else None
        try:
            result = unit.on_processing_complete(self._view)
            entries = normalize_entries(result, default_source=stream.origin if stream is not None else None)
        except RecordError as err:
            return RecordOutcome.failure(err)
        except Exception as exc:
            return RecordOutcome.failure(
                ConversionError(
                    f"Transform {type(unit).__name__} completion failed: {type(exc).__name__}: {exc}",
                    stream=stream_str,
                )
            )
        return RecordOutcome.success(entries)

    def _apply(
        self,
        outcome: RecordOutcome,
        record: SourceRecord | None,
        sink: RevisionSink,
        logger: logging.Logger,
        run_id: str,
        report: ReportCollector | None,
        count_record: bool = True,
    ) -> bool:
        """
        Назначение:
            Применить результат записи: сущности в sink либо политика ошибок.

        Выходные данные:
            True, если цикл нужно остановить (FAIL).
        """
        if outcome.ok:
            for entry in outcome.entries:
                sink.append(entry)
            if count_record and record is not None:
                self.stats.records_processed += 1
                self.stats.increment_processed_by_stream(record.stream)
                if report is not None:
                    report.add_passed(len(outcome.entries))
                if self.stats_interval and self.stats.records_processed % self.stats_interval == 0:
                    log_event(
                        logger,
                        logging.INFO,
                        run_id,
                        "ingest",
                        "Context stats",
                        processed=self.stats.records_processed,
                        context=self.context.stats(),
                    )
            return False

        err = outcome.error
        stream = err.stream or (record.stream if record is not None else None)
        if count_record:
            self.stats.increment_errored(stream, err.code)
        else:
            self.stats.completions_errored += 1
        if self._first_error is None:
            self._first_error = err
        log_event(
            logger,
            logging.WARNING,
            run_id,
            "ingest",
            f"Record error: {err.message}",
            code=err.code,
            line_no=err.line_no,
            stream=stream,
        )
        if report is not None:
            line_no = err.line_no if err.line_no is not None else (record.line_no if record is not None else 0)
            report.add_item(
                status=STATUS_FAILED,
                row_ref=RowRef(line_no=line_no, row_id=f"line:{line_no}", stream=stream),
                payload=None,
                errors=[
                    ValidationErrorItem(
                        stage=_STAGE_BY_CODE.get(err.code, DiagnosticStage.CONVERT),
                        code=err.code,
                        field=None,
                        message=err.message,
                    )
                ],
                meta={"strategy": self.strategy.value},
            )

        if decide(self.strategy, outcome) is PolicyDecision.ABORT:
            return True
        if count_record:
            self.stats.records_skipped += 1
        return False

    def _discard(self, sink: RevisionSink, logger: logging.Logger, run_id: str) -> None:
        try:
            sink.close(False)
        except WriteError as exc:
            log_event(logger, logging.ERROR, run_id, "ingest", f"Failed to discard revision: {exc}")

    def _resolve_origin(self) -> str:
        if self.origin:
            return self.origin
        if self.catalog is not None:
            derived = self.catalog.derive_origin()
            if derived:
                return derived
        return DEFAULT_REVISION_ORIGIN

    def _finish(
        self,
        logger: logging.Logger,
        run_id: str,
        report: ReportCollector | None,
        sink: RevisionSink,
        *,
        aborted: bool = False,
        fatal_error: WriteError | None = None,
    ) -> IngestResult:
        committed = sink.committed and fatal_error is None and not aborted
        if fatal_error is not None:
            status, exit_code = STATUS_FAILED, EXIT_FATAL
        elif aborted:
            status, exit_code = STATUS_FAILED, EXIT_ABORTED
        elif self.stats.records_errored or self.stats.completions_errored:
            status, exit_code = STATUS_PARTIAL, EXIT_OK
        else:
            status, exit_code = STATUS_SUCCESS, EXIT_OK

        self._log_stats(logger, run_id)
        handle = sink.handle
        result = IngestResult(
            status=status,
            exit_code=exit_code,
            stats=self.stats,
            revision_uid=handle.uid if handle is not None else None,
            committed=committed,
            aborted=aborted,
            dry_run=self.dry_run,
            checkpoints=list(self._checkpoints) if committed else [],
            first_error=self._first_error,
            fatal_error=fatal_error,
        )
        if report is not None:
            report.status = status
            report.set_meta(revision_uid=result.revision_uid)
            report.set_context("stats", self.stats.to_dict())
            report.set_context("context", self.context.stats())
            report.add_op("entries_write", ok=self.stats.records_written, count=self.stats.records_written)
            report.add_op("batches", ok=sink.batches_sent, count=sink.batches_sent)
            if fatal_error is not None:
                report.set_context("fatal_error", fatal_error.to_dict())
        log_event(
            logger,
            logging.INFO if exit_code == EXIT_OK else logging.ERROR,
            run_id,
            "ingest",
            f"Ingest finished: status={status}",
            committed=committed,
            revision=result.revision_uid,
            checkpoints=len(result.checkpoints),
        )
        return result

    def _log_stats(self, logger: logging.Logger, run_id: str) -> None:
        stats = self.stats
        totals: dict[str, Any] = {
            "messages_read": stats.messages_read,
            "records_read": stats.records_read,
            "records_processed": stats.records_processed,
            "records_written": stats.records_written,
            "records_errored": stats.records_errored,
            "records_skipped": stats.records_skipped,
            "records_deferred": stats.records_deferred,
            "completions_errored": stats.completions_errored,
            "checkpoints_read": stats.checkpoints_read,
        }
        log_event(logger, logging.INFO, run_id, "stats", "stats.total", **totals)
        for stream in sorted({*stats.processed_by_stream, *stats.errored_by_stream}):
            log_event(
                logger,
                logging.INFO,
                run_id,
                "stats",
                "stats.stream",
                stream=stream,
                processed=stats.processed_by_stream.get(stream, 0),
                errored=stats.errored_by_stream.get(stream, 0),
            )
        for entry_type, count in sorted(stats.written_by_type.items()):
            log_event(logger, logging.INFO, run_id, "stats", "stats.type", type=entry_type, written=count)
