from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class MessageKind(str, Enum):
    """
    Назначение:
        Классификация строки входного протокола.
    """

    RECORD = "RECORD"
    STATE = "STATE"
    OTHER = "OTHER"


@dataclass(frozen=True)
class SourceRecord:
    """
    Назначение:
        Сырая запись потока в том виде, как она пришла во входе.

    Инварианты/гарантии:
        - Неизменяема после чтения (data обёрнута в read-only mapping).
        - line_no - номер строки входа (1-based), 0 если запись создана не из файла.
    """

    stream: str
    data: Mapping[str, Any]
    emitted_at: int | None = None
    line_no: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.data, MappingProxyType):
            object.__setattr__(self, "data", MappingProxyType(dict(self.data)))


@dataclass(frozen=True)
class Checkpoint:
    """Checkpoint (STATE) сообщение; пробрасывается без изменений."""

    data: Mapping[str, Any]
    line_no: int = 0

    def to_message(self) -> dict[str, Any]:
        return {"type": MessageKind.STATE.value, "state": {"data": dict(self.data)}}


@dataclass(frozen=True)
class InputMessage:
    """
    Назначение:
        Разобранная строка входа: запись, checkpoint либо прочее сообщение.
    """

    kind: MessageKind
    line_no: int
    record: SourceRecord | None = None
    checkpoint: Checkpoint | None = None
    raw_type: str | None = None


@dataclass(frozen=True)
class DestinationEntry:
    """
    Назначение:
        Одна сущность канонической схемы: (type, payload).

    Взаимодействия:
        payload может содержать ссылки на другие сущности по (type, natural key);
        их разрешает хранилище, а не пайплайн.
    """

    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {self.type: self.payload}


class DiagnosticStage(str, Enum):
    """
    Назначение:
        Этап пайплайна, на котором возникло диагностическое событие.
    """

    READ = "READ"
    RESOLVE = "RESOLVE"
    CONVERT = "CONVERT"
    WRITE = "WRITE"


@dataclass
class ValidationErrorItem:
    """
    Назначение:
        Диагностическое сообщение пайплайна (ошибка/предупреждение).
    """
    stage: DiagnosticStage
    code: str
    field: str | None
    message: str


@dataclass(frozen=True)
class RowRef:
    """
    Назначение:
        Ссылка на строку входа для отчётов.
    """
    line_no: int
    row_id: str
    stream: str | None = None
