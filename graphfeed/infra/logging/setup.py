from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

RESERVED_FIELDS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}


class EnsureFieldsFilter(logging.Filter):
    """
    Назначение:
        Гарантирует наличие полей runId и component в LogRecord,
        чтобы форматтер не падал KeyError.
    """

    def __init__(self, runId: str, defaultComponent: str = "core"):
        super().__init__()
        self.runId = runId
        self.defaultComponent = defaultComponent

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "runId"):
            record.runId = self.runId
        if not hasattr(record, "component"):
            record.component = self.defaultComponent
        return True


class KeyValueFormatter(logging.Formatter):
    """Текстовый формат: базовая строка + дополнительные поля key=value."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s runId=%(runId)s comp=%(component)s msg=%(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra = _extra_fields(record)
        if not extra:
            return line
        tail = " ".join(f"{key}={_render_value(value)}" for key, value in extra.items())
        return f"{line} {tail}"


class JsonLineFormatter(logging.Formatter):
    """Одна JSON-строка на событие: ts, level, runId, component, msg и доп. поля."""

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "runId": getattr(record, "runId", None),
            "component": getattr(record, "component", None),
            "msg": record.getMessage(),
        }
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class StdStreamToLogger:
    """
    Назначение:
        Перехват stdout/stderr и логирование построчно.
    """

    def __init__(self, logger: logging.Logger, level: int, runId: str, component: str):
        self.logger = logger
        self.level = level
        self.runId = runId
        self.component = component
        self.buffer = ""

    def write(self, s: str) -> int:
        if not s:
            return 0
        self.buffer += s
        while "\n" in self.buffer:
            line, self.buffer = self.buffer.split("\n", 1)
            if line.strip():
                self.logger.log(self.level, line.rstrip(), extra={"runId": self.runId, "component": self.component})
        return len(s)

    def flush(self) -> None:
        if self.buffer.strip():
            self.logger.log(self.level, self.buffer.rstrip(), extra={"runId": self.runId, "component": self.component})
        self.buffer = ""


class TeeStream:
    """
    Назначение:
        Дублирует вывод: пишет в оригинальный stream и в stream-логгер.
    """

    def __init__(self, primary, secondary):
        self.primary = primary
        self.secondary = secondary

    def write(self, s: str) -> int:
        a = self.primary.write(s)
        self.secondary.write(s)
        return a

    def flush(self) -> None:
        self.primary.flush()
        self.secondary.flush()


def map_log_level(levelName: str) -> int:
    """ERROR|WARN|WARNING|INFO|DEBUG -> logging level; иначе ValueError."""
    value = (levelName or "").strip().upper()
    if value == "ERROR":
        return logging.ERROR
    if value in ("WARN", "WARNING"):
        return logging.WARNING
    if value == "INFO":
        return logging.INFO
    if value == "DEBUG":
        return logging.DEBUG
    raise ValueError(f"Unsupported log level: {levelName}")


def create_command_logger(
    command: str,
    log_dir: str,
    run_id: str,
    log_level: str,
    log_json: bool = False,
) -> tuple[logging.Logger, str]:
    """
    Назначение:
        Создаёт логгер для конкретной команды и возвращает путь к log-файлу.

    Контракт:
        - Файл: <log_dir>/<command>_<run_id>.log.
        - log_json=True -> JSON-строки вместо текстового формата.
        - Логгер не пропагирует в root, хендлеры пересоздаются.
    """
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    log_file_path = str(Path(log_dir) / f"{command}_{run_id}.log")

    logger = logging.getLogger(f"graphfeed.{command}.{run_id}")
    logger.handlers.clear()
    logger.propagate = False

    level = map_log_level(log_level)
    logger.setLevel(level)

    file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(JsonLineFormatter() if log_json else KeyValueFormatter())
    file_handler.addFilter(EnsureFieldsFilter(runId=run_id))
    logger.addHandler(file_handler)

    return logger, log_file_path


def close_logger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def log_event(
    logger: logging.Logger,
    level: int,
    run_id: str,
    component: str,
    message: str,
    **fields: Any,
) -> None:
    """
    Назначение:
        Унифицированная запись событий с runId/component и структурными полями.
    """
    extra = {"runId": run_id, "component": component}
    for key, value in fields.items():
        extra[key if key not in RESERVED_FIELDS else f"f_{key}"] = value
    logger.log(level, message, extra=extra)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in RESERVED_FIELDS and key not in ("runId", "component")
    }


def _render_value(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str, sort_keys=True)
    return str(value)
