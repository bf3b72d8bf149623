from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class RunStats:
    """
    Назначение:
        Счётчики запуска: прочитано/обработано/записано/ошибок,
        с разбивкой по потокам и по типам сущностей.

    Инварианты/гарантии:
        - Чисто наблюдательные данные, на поведение пайплайна не влияют.
        - records_processed + records_errored == records_read + нечитаемые строки;
          ошибки on_processing_complete считаются отдельно (completions_errored).
    """

    messages_read: int = 0
    records_read: int = 0
    records_processed: int = 0
    records_written: int = 0
    records_errored: int = 0
    records_skipped: int = 0
    records_deferred: int = 0
    completions_errored: int = 0
    checkpoints_read: int = 0
    processed_by_stream: dict[str, int] = field(default_factory=dict)
    errored_by_stream: dict[str, int] = field(default_factory=dict)
    written_by_type: dict[str, int] = field(default_factory=dict)
    errored_by_code: dict[str, int] = field(default_factory=dict)

    def increment_processed_by_stream(self, stream: str) -> None:
        self.processed_by_stream[stream] = self.processed_by_stream.get(stream, 0) + 1

    def increment_errored(self, stream: str | None, code: str) -> None:
        self.records_errored += 1
        key = stream or "<unknown>"
        self.errored_by_stream[key] = self.errored_by_stream.get(key, 0) + 1
        self.errored_by_code[code] = self.errored_by_code.get(code, 0) + 1

    def increment_written_by_type(self, entry_type: str) -> None:
        self.records_written += 1
        self.written_by_type[entry_type] = self.written_by_type.get(entry_type, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
