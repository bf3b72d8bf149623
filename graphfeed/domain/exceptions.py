from __future__ import annotations

from typing import Any

from graphfeed.domain.error_codes import ErrorCode
from graphfeed.errors import AppError


class MalformedStreamName(AppError):
    """Имя потока не раскладывается на (origin, name)."""

    def __init__(self, value: str, reason: str):
        super().__init__(
            category="stream",
            code=ErrorCode.MALFORMED_STREAM_NAME.value,
            message=f"Invalid stream name '{value}': {reason}",
            details={"stream": value},
        )
        self.value = value


class RecordError(AppError):
    """
    Назначение:
        База для ошибок уровня одной записи входа.
    Инварианты/гарантии:
        - Подчиняется политике ошибок (SKIP/FAIL).
        - line_no/stream заполняются, если известны.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        line_no: int | None = None,
        stream: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        payload = dict(details or {})
        if line_no is not None:
            payload["line_no"] = line_no
        if stream is not None:
            payload["stream"] = stream
        super().__init__(category="record", code=code.value, message=message, details=payload)
        self.line_no = line_no
        self.stream = stream


class MalformedInput(RecordError):
    """Строка входа не разбирается в сообщение протокола."""

    def __init__(self, message: str, *, line_no: int | None = None, stream: str | None = None):
        super().__init__(ErrorCode.MALFORMED_INPUT, message, line_no=line_no, stream=stream)


class UndefinedStream(RecordError):
    """Для потока записи не найден трансформер."""

    def __init__(self, stream: str, *, line_no: int | None = None, reason: str | None = None):
        message = f"Undefined stream {stream}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(ErrorCode.UNDEFINED_STREAM, message, line_no=line_no, stream=stream)


class ConversionError(RecordError):
    """Трансформер упал или вернул результат неверной формы."""

    def __init__(self, message: str, *, line_no: int | None = None, stream: str | None = None):
        super().__init__(ErrorCode.CONVERSION_ERROR, message, line_no=line_no, stream=stream)


class WriteError(AppError):
    """
    Назначение:
        Ошибка открытия/дозаписи/закрытия ревизии.
    Инварианты/гарантии:
        - Всегда фатальна, независимо от политики ошибок.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        code: ErrorCode = ErrorCode.WRITE_ERROR,
        status_code: int | None = None,
        retryable: bool = False,
    ):
        super().__init__(
            category="store",
            code=code.value,
            message=message,
            retryable=retryable,
            details={"operation": operation, "status_code": status_code},
        )
        self.operation = operation
        self.status_code = status_code


class ConfigError(AppError):
    """Неконсистентная конфигурация запуска (каталог, origin, режимы)."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.CONFIG_ERROR):
        super().__init__(category="config", code=code.value, message=message)


class CircularDependency(ConfigError):
    def __init__(self, streams: list[str]):
        super().__init__(
            f"Circular transform dependency detected: {','.join(streams)}",
            code=ErrorCode.CIRCULAR_DEPENDENCY,
        )
        self.streams = streams


__all__ = [
    "MalformedStreamName",
    "RecordError",
    "MalformedInput",
    "UndefinedStream",
    "ConversionError",
    "WriteError",
    "ConfigError",
    "CircularDependency",
]
