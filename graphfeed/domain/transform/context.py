from __future__ import annotations

from typing import Any

from graphfeed.domain.models import SourceRecord
from graphfeed.domain.stream_name import StreamName


def _stream_key(stream: StreamName | str) -> str:
    if isinstance(stream, StreamName):
        return stream.as_string
    return StreamName.from_string(stream).as_string


class CorrelationContext:
    """
    Назначение/ответственность:
        In-memory индекс всех увиденных записей по (поток, ключ) для
        кросс-потоковых lookup'ов трансформеров.

    Инварианты/гарантии:
        - Append-only на время запуска; повторный ключ перезаписывает запись
          (last-write-wins), позиция в порядке вставки сохраняется за первым появлением.
        - get() для неизвестного ключа возвращает None, не бросает.
        - Без вытеснения: память ограничена только временем жизни запуска.
    Ограничения:
        - Однопоточный; владелец - цикл приёма, трансформеры только читают.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, SourceRecord]] = {}

    def record(self, stream: StreamName | str, key: Any, record: SourceRecord) -> None:
        by_key = self._records.setdefault(_stream_key(stream), {})
        by_key[str(key)] = record

    def get(self, stream: StreamName | str, key: Any) -> SourceRecord | None:
        if key is None:
            return None
        by_key = self._records.get(_stream_key(stream))
        if not by_key:
            return None
        return by_key.get(str(key))

    def all(self, stream: StreamName | str) -> list[SourceRecord]:
        """Снимок записей потока в порядке вставки (только уже увиденные)."""
        by_key = self._records.get(_stream_key(stream))
        if not by_key:
            return []
        return list(by_key.values())

    def streams(self) -> list[str]:
        return list(self._records.keys())

    def size(self) -> int:
        return sum(len(by_key) for by_key in self._records.values())

    def stats(self, include_keys: bool = False) -> dict[str, Any]:
        res: dict[str, Any] = {}
        for stream, by_key in self._records.items():
            entry: dict[str, Any] = {"count": len(by_key)}
            if include_keys:
                entry["keys"] = list(by_key.keys())
            res[stream] = entry
        return res


class ContextView:
    """
    Назначение:
        Read-only обёртка контекста, которая передаётся в трансформеры.
    """

    def __init__(self, context: CorrelationContext) -> None:
        self._context = context

    def get(self, stream: StreamName | str, key: Any) -> SourceRecord | None:
        return self._context.get(stream, key)

    def all(self, stream: StreamName | str) -> list[SourceRecord]:
        return self._context.all(stream)

    def streams(self) -> list[str]:
        return self._context.streams()
