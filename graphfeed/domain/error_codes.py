from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """
    Назначение:
        Единая таксономия кодов ошибок пайплайна и записи ревизий.
    """

    MALFORMED_STREAM_NAME = "MALFORMED_STREAM_NAME"
    MALFORMED_INPUT = "MALFORMED_INPUT"
    UNDEFINED_STREAM = "UNDEFINED_STREAM"
    CONVERSION_ERROR = "CONVERSION_ERROR"
    WRITE_ERROR = "WRITE_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    HTTP_ERROR = "HTTP_ERROR"
    INVALID_JSON = "INVALID_JSON"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    CONFIG_ERROR = "CONFIG_ERROR"

    @classmethod
    def from_status(cls, status_code: int | None) -> "ErrorCode":
        """
        Назначение:
            Подбор общего кода по HTTP-статусу.
        """
        if status_code is None:
            return cls.NETWORK_ERROR
        if status_code == 401:
            return cls.UNAUTHORIZED
        if status_code == 403:
            return cls.FORBIDDEN
        if status_code == 404:
            return cls.NOT_FOUND
        return cls.HTTP_ERROR
