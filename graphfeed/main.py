from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path

import typer

from graphfeed.common.run_id import generate_run_id
from graphfeed.common.sanitize import maskSecret
from graphfeed.common.time_utils import getDurationMs
from graphfeed.config import Settings, load_settings
from graphfeed.domain.exceptions import ConfigError, MalformedStreamName
from graphfeed.domain.stream_name import StreamName
from graphfeed.domain.transform import FallbackMode, TransformRegistry, build_registry
from graphfeed.infra.artifacts.report_writer import createEmptyReport, finalizeReport, writeReportJson
from graphfeed.infra.http.graph_client import ApiError, GraphApiClient
from graphfeed.infra.http.revision_store import GraphRevisionStore
from graphfeed.infra.logging.setup import (
    StdStreamToLogger,
    TeeStream,
    close_logger,
    create_command_logger,
    log_event,
)
from graphfeed.infra.sources.catalog_reader import load_catalog
from graphfeed.infra.sources.message_reader import JsonlMessageSource
from graphfeed.transforms import BUILTIN_TRANSFORMS, PassthroughTransform, build_override
from graphfeed.usecases.ingest_usecase import EXIT_FATAL, IngestUseCase

app = typer.Typer(no_args_is_help=True, add_completion=False)


def ensureDir(path: str) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def requireApi(settings: Settings) -> None:
    """
    Назначение:
        Проверяет наличие параметров API для команд, которым нужен доступ к хранилищу.

    Поведение:
        - Если чего-то не хватает - exit code 2.
    """
    missing = []
    if not settings.api_url:
        missing.append("api_url")
    if not settings.api_key:
        missing.append("api_key")
    if not settings.graph:
        missing.append("graph")

    if missing:
        typer.echo(f"ERROR: missing API settings: {', '.join(missing)}", err=True)
        raise typer.Exit(code=2)


def printRunHeader(runId: str, command: str, settings: Settings, sources: list[str]) -> None:
    """
    Назначение:
        Печатает безопасную сводку параметров запуска (без секретов).
        Пишет в stderr: stdout команды write занят checkpoint-сообщениями.
    """
    typer.echo(
        f"run_id={runId} command={command} "
        f"api_url={settings.api_url} graph={settings.graph} api_key={maskSecret(settings.api_key)} "
        f"dry_run={settings.dry_run} strategy={settings.invalid_record_strategy} sources={sources}"
        f" log_level={settings.log_level} log_json={settings.log_json}",
        err=True,
    )


def buildClient(settings: Settings, transport=None) -> GraphApiClient:
    return GraphApiClient(
        baseUrl=settings.api_url or "",
        apiKey=settings.api_key or "",
        timeoutSeconds=settings.timeout_seconds,
        tlsSkipVerify=settings.tls_skip_verify,
        caFile=settings.ca_file,
        retries=settings.retries,
        retryBackoffSeconds=settings.retry_backoff_seconds,
        transport=transport,
    )


def runWithReport(
    ctx: typer.Context,
    commandName: str,
    requiresApiAccess: bool,
    runner,
) -> None:
    """
    Назначение:
        Унифицированная обвязка выполнения команд:
        - создаёт логгер + файл лога
        - создаёт skeleton отчёта
        - валидирует параметры API
        - перенаправляет stdout/stderr в лог (tee)
        - гарантирует запись отчёта в finally
    """
    runId = ctx.obj["runId"]
    settings: Settings = ctx.obj["settings"]
    sources = ctx.obj["sources"]

    startMonotonic = time.monotonic()

    logger, logFilePath = create_command_logger(
        command=commandName,
        log_dir=settings.log_dir,
        run_id=runId,
        log_level=settings.log_level,
        log_json=settings.log_json,
    )

    report = createEmptyReport(runId=runId, command=commandName, configSources=sources)
    report.set_meta(graph=settings.graph, items_limit=settings.report_items_limit)

    originalStdout = sys.stdout
    originalStderr = sys.stderr

    stdoutLoggerStream = StdStreamToLogger(logger, logging.INFO, runId, "stdout")
    stderrLoggerStream = StdStreamToLogger(logger, logging.ERROR, runId, "stderr")

    sys.stdout = TeeStream(originalStdout, stdoutLoggerStream)
    sys.stderr = TeeStream(originalStderr, stderrLoggerStream)

    exitCode: int | None = None

    try:
        log_event(logger, logging.INFO, runId, "core", "Command started", command=commandName)
        printRunHeader(runId, commandName, settings, sources)

        if requiresApiAccess:
            try:
                requireApi(settings)
            except typer.Exit:
                log_event(logger, logging.ERROR, runId, "config", "Missing API settings")
                typer.echo("ERROR: missing API settings (see logs/report)", err=True)
                report.status = "FAILED"
                exitCode = 2
                return

        exitCode = runner(logger, report)

    finally:
        durationMs = getDurationMs(startMonotonic, time.monotonic())
        finalizeReport(
            report=report,
            durationMs=durationMs,
            logFile=logFilePath,
            reportDir=settings.report_dir,
        )
        reportPath = writeReportJson(report, settings.report_dir, f"report_{commandName}_{runId}")
        log_event(logger, logging.INFO, runId, "report", f"Report written: {reportPath}")

        sys.stdout = originalStdout
        sys.stderr = originalStderr
        close_logger(logger)

        if exitCode is not None:
            raise typer.Exit(code=exitCode)


def buildRegistry(settings: Settings) -> TransformRegistry:
    """
    Назначение:
        Реестр трансформеров запуска: встроенная таблица, явные переопределения
        потоков (transform_overrides) и резервный трансформер.

    Ошибки:
        ConfigError - override без fallback_type, неизвестный трансформер
        или некорректное имя потока в переопределениях.
    """
    fallback = PassthroughTransform(settings.fallback_type) if settings.fallback_type else None
    if fallback is None and FallbackMode.parse(settings.fallback_mode) is FallbackMode.OVERRIDE:
        raise ConfigError("fallback_mode=override requires fallback_type")
    overrides = []
    for stream, target in sorted(settings.transform_overrides.items()):
        try:
            overrides.append((StreamName.from_string(stream), build_override(target)))
        except (ValueError, MalformedStreamName) as exc:
            raise ConfigError(f"Invalid transform override {stream}={target}: {exc}") from exc
    return build_registry(
        BUILTIN_TRANSFORMS,
        overrides=overrides,
        fallback=fallback,
        fallback_mode=settings.fallback_mode,
    )


def runWriteCommand(ctx: typer.Context, inputPath: str, catalogPath: str | None, apiTransport=None) -> None:
    settings: Settings = ctx.obj["settings"]
    runId = ctx.obj["runId"]

    def execute(logger, report) -> int:
        client: GraphApiClient | None = None
        try:
            catalog = load_catalog(catalogPath) if catalogPath else None
            registry = buildRegistry(settings)

            store = None
            if not settings.dry_run:
                client = buildClient(settings, transport=apiTransport)
                store = GraphRevisionStore(client, settings.graph, expiration=settings.expiration)

            usecase = IngestUseCase(
                registry,
                store,
                strategy=settings.invalid_record_strategy,
                dry_run=settings.dry_run,
                batch_size=settings.batch_size,
                defer_dependents=settings.defer_dependents,
                origin=settings.revision_origin,
                catalog=catalog,
            )
            result = usecase.run(JsonlMessageSource(inputPath), logger=logger, run_id=runId, report=report)
        except ConfigError as exc:
            log_event(logger, logging.ERROR, runId, "config", f"Configuration error: {exc}", code=exc.code)
            typer.echo(f"ERROR: {exc}", err=True)
            report.status = "FAILED"
            return 2
        except OSError as exc:
            log_event(logger, logging.ERROR, runId, "input", f"Input read error: {exc}")
            typer.echo(f"ERROR: input read error: {exc}", err=True)
            report.status = "FAILED"
            return 2
        finally:
            if client is not None:
                report.set_context(
                    "api",
                    {"requests": client.requests_sent, "retries": client.getRetryAttempts()},
                )
                client.close()

        for checkpoint in result.checkpoints:
            typer.echo(json.dumps(checkpoint.to_message(), ensure_ascii=False))

        stats = result.stats
        typer.echo(
            f"status={result.status} revision={result.revision_uid} committed={result.committed} "
            f"read={stats.records_read} processed={stats.records_processed} "
            f"written={stats.records_written} errored={stats.records_errored}",
            err=True,
        )
        if result.fatal_error is not None:
            typer.echo(f"ERROR: {result.fatal_error} (see logs/report)", err=True)
        elif result.aborted and result.first_error is not None:
            typer.echo(f"ERROR: processing aborted: {result.first_error} (see logs/report)", err=True)
        return result.exit_code

    runWithReport(
        ctx=ctx,
        commandName="write",
        requiresApiAccess=not settings.dry_run,
        runner=execute,
    )


def runCheckApiCommand(ctx: typer.Context, apiTransport=None) -> None:
    settings: Settings = ctx.obj["settings"]
    runId = ctx.obj["runId"]

    def execute(logger, report) -> int:
        if settings.dry_run:
            log_event(logger, logging.INFO, runId, "api", "Dry run: API check skipped")
            typer.echo("dry run: API check skipped", err=True)
            return 0
        client = buildClient(settings, transport=apiTransport)
        try:
            start = time.monotonic()
            client.getGraph(settings.graph)
            latency_ms = int((time.monotonic() - start) * 1000)
            log_event(
                logger,
                logging.INFO,
                runId,
                "api",
                f"api ok base_url={settings.api_url} graph={settings.graph}",
                latency_ms=latency_ms,
            )
            report.set_context("api", {"base_url": settings.api_url, "latency_ms": latency_ms})
            return 0
        except ApiError as exc:
            log_event(logger, logging.ERROR, runId, "api", f"API check failed: {exc}", code=exc.code)
            typer.echo("ERROR: API check failed (see logs/report)", err=True)
            report.status = "FAILED"
            return EXIT_FATAL
        finally:
            client.close()

    runWithReport(
        ctx=ctx,
        commandName="check-api",
        requiresApiAccess=not settings.dry_run,
        runner=execute,
    )


@app.callback()
def main(
    ctx: typer.Context,
    config: str | None = typer.Option(None, "--config", help="Path to config.yml"),
    runId: str | None = typer.Option(None, "--run-id", help="Run identifier (UUID). If omitted, generated."),
    logLevel: str | None = typer.Option(None, "--log-level", help="Log level: ERROR|WARN|INFO|DEBUG"),
    logJson: bool | None = typer.Option(None, "--log-json/--no-log-json", help="Write log lines as JSON"),
    logDir: str | None = typer.Option(None, "--log-dir", help="Directory for logs."),
    reportDir: str | None = typer.Option(None, "--report-dir", help="Directory for reports."),
    apiUrl: str | None = typer.Option(None, "--api-url", help="Graph API base URL"),
    apiKey: str | None = typer.Option(None, "--api-key", help="Graph API key (avoid; use env/file)"),
    apiKeyFile: str | None = typer.Option(None, "--api-key-file", help="Read API key from file"),
    graph: str | None = typer.Option(None, "--graph", help="Target graph name"),
    expiration: str | None = typer.Option(None, "--expiration", help="Revision expiration (e.g. '5 seconds')"),
    revisionOrigin: str | None = typer.Option(None, "--origin", help="Revision origin"),
    tlsSkipVerify: bool | None = typer.Option(None, "--tls-skip-verify", help="Disable TLS verification"),
    caFile: str | None = typer.Option(None, "--ca-file", help="CA file path"),
    timeoutSeconds: float | None = typer.Option(None, "--timeout-seconds", help="API timeout in seconds"),
    retries: int | None = typer.Option(None, "--retries", help="Retry attempts for API calls"),
    retryBackoffSeconds: float | None = typer.Option(None, "--retry-backoff-seconds", help="Base backoff for retries"),
    reportItemsLimit: int | None = typer.Option(None, "--report-items-limit", help="Limit report items stored"),
):
    """
    Назначение:
        Глобальная инициализация CLI:
        - генерирует/принимает run_id
        - загружает настройки (CLI > ENV > config > defaults)
        - создаёт каталоги log/report
        - сохраняет всё в ctx.obj для подкоманд
    """
    if apiKeyFile and not apiKey:
        p = Path(apiKeyFile)
        if not p.exists() or not p.is_file():
            typer.echo(f"ERROR: api-key-file not found: {apiKeyFile}", err=True)
            raise typer.Exit(code=2)
        apiKey = p.read_text(encoding="utf-8").strip()

    if not runId:
        runId = generate_run_id()

    cliOverrides = {
        "api_url": apiUrl,
        "api_key": apiKey,
        "graph": graph,
        "expiration": expiration,
        "revision_origin": revisionOrigin,
        "log_level": logLevel,
        "log_json": logJson,
        "log_dir": logDir,
        "report_dir": reportDir,
        "tls_skip_verify": tlsSkipVerify,
        "ca_file": caFile,
        "timeout_seconds": timeoutSeconds,
        "retries": retries,
        "retry_backoff_seconds": retryBackoffSeconds,
        "report_items_limit": reportItemsLimit,
    }
    try:
        loaded = load_settings(config_path=config, cli_overrides=cliOverrides)
    except ValueError as exc:
        typer.echo(f"ERROR: invalid settings: {exc}", err=True)
        raise typer.Exit(code=2)

    ensureDir(loaded.settings.log_dir)
    ensureDir(loaded.settings.report_dir)

    ctx.obj = {
        "runId": runId,
        "settings": loaded.settings,
        "sources": loaded.sources_used,
        "configPath": config,
    }


def applyCommandOverrides(ctx: typer.Context, overrides: dict) -> None:
    """Перезагружает настройки с опциями подкоманды (тот же приоритет CLI > ENV > config)."""
    if not any(v is not None for v in overrides.values()):
        return
    settings: Settings = ctx.obj["settings"]
    merged = {name: getattr(settings, name) for name in settings.__dataclass_fields__}
    merged.update({k: v for k, v in overrides.items() if v is not None})
    try:
        loaded = load_settings(config_path=None, cli_overrides=merged)
    except ValueError as exc:
        typer.echo(f"ERROR: invalid settings: {exc}", err=True)
        raise typer.Exit(code=2)
    ctx.obj["settings"] = loaded.settings
    if "cli" not in ctx.obj["sources"]:
        ctx.obj["sources"] = [*ctx.obj["sources"], "cli"]


@app.command("write")
def write(
    ctx: typer.Context,
    inputPath: str = typer.Option(..., "--input", help="Input file with protocol messages, '-' for stdin"),
    catalogPath: str | None = typer.Option(None, "--catalog", help="Configured catalog JSON"),
    dryRun: bool | None = typer.Option(None, "--dry-run/--no-dry-run", help="Process without writing to the graph"),
    invalidRecordStrategy: str | None = typer.Option(
        None, "--invalid-record-strategy", help="What to do with invalid records: SKIP|FAIL"
    ),
    fallbackType: str | None = typer.Option(None, "--fallback-type", help="Destination type for unknown streams"),
    fallbackMode: str | None = typer.Option(None, "--fallback-mode", help="fallback|override"),
    batchSize: int | None = typer.Option(None, "--batch-size", help="Entries per append request"),
    deferDependents: bool | None = typer.Option(
        None,
        "--defer-dependents/--no-defer-dependents",
        help="Convert records of dependent streams after the whole input is read",
    ),
    transforms: list[str] | None = typer.Option(
        None,
        "--transform",
        help="Stream transform override STREAM=TARGET (builtin stream or passthrough:<type>), repeatable",
    ),
):
    applyCommandOverrides(
        ctx,
        {
            "dry_run": dryRun,
            "invalid_record_strategy": invalidRecordStrategy,
            "fallback_type": fallbackType,
            "fallback_mode": fallbackMode,
            "batch_size": batchSize,
            "defer_dependents": deferDependents,
            "transform_overrides": transforms or None,
        },
    )
    runWriteCommand(ctx, inputPath, catalogPath)


@app.command("check-api")
def checkApi(ctx: typer.Context):
    runCheckApiCommand(ctx)


@app.command("streams")
def streams(ctx: typer.Context):
    """Список трансформеров запуска (с учётом переопределений): типы сущностей и зависимости."""
    settings: Settings = ctx.obj["settings"]
    try:
        registry = buildRegistry(settings)
    except ConfigError as exc:
        typer.echo(f"ERROR: {exc}", err=True)
        raise typer.Exit(code=2)
    for name in registry.known_streams():
        unit = registry.resolve(name)
        types = ",".join(unit.destination_types())
        deps = ",".join(dep.as_string for dep in unit.dependencies())
        typer.echo(f"{name} types={types} dependencies={deps or '-'}")
    if settings.fallback_type:
        typer.echo(f"* types={settings.fallback_type} mode={settings.fallback_mode}")


if __name__ == "__main__":
    app()
