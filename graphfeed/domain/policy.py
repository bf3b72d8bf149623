from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from graphfeed.domain.exceptions import RecordError
from graphfeed.domain.models import DestinationEntry


class InvalidRecordStrategy(str, Enum):
    """
    Назначение:
        Политика обработки ошибок уровня записи; фиксируется на весь запуск.
    """

    SKIP = "SKIP"
    FAIL = "FAIL"

    @classmethod
    def parse(cls, value: str | "InvalidRecordStrategy") -> "InvalidRecordStrategy":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().upper()
        try:
            return cls(normalized)
        except ValueError as exc:
            allowed = ",".join(item.value for item in cls)
            raise ValueError(f"Invalid strategy {value}. Possible values are {allowed}") from exc


class PolicyDecision(str, Enum):
    CONTINUE = "CONTINUE"
    ABORT = "ABORT"


@dataclass(frozen=True)
class RecordOutcome:
    """
    Назначение:
        Результат обработки одной записи: либо список сущностей, либо ошибка.

    Инварианты/гарантии:
        - Ровно одно из entries/error содержательно: при error entries пуст.
    """

    entries: Sequence[DestinationEntry] = field(default_factory=tuple)
    error: RecordError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, entries: Sequence[DestinationEntry]) -> "RecordOutcome":
        return cls(entries=tuple(entries), error=None)

    @classmethod
    def failure(cls, error: RecordError) -> "RecordOutcome":
        return cls(entries=(), error=error)


def decide(strategy: InvalidRecordStrategy, outcome: RecordOutcome) -> PolicyDecision:
    """
    Назначение:
        Чистая функция политики: что делать с результатом записи.

    Алгоритм:
        - Успех -> CONTINUE.
        - Ошибка при SKIP -> CONTINUE (запись даёт ноль сущностей).
        - Ошибка при FAIL -> ABORT.
    """
    if outcome.ok:
        return PolicyDecision.CONTINUE
    if strategy is InvalidRecordStrategy.SKIP:
        return PolicyDecision.CONTINUE
    return PolicyDecision.ABORT
