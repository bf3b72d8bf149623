from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, Sequence, Tuple, Union

from graphfeed.domain.models import DestinationEntry, SourceRecord
from graphfeed.domain.stream_name import StreamName

if TYPE_CHECKING:
    from graphfeed.domain.transform.context import ContextView

ConvertedItem = Union[DestinationEntry, Tuple[str, dict]]


class TransformUnit(Protocol):
    """
    Назначение/ответственность:
        Контракт трансформера потока: сырая запись + read-only контекст
        -> список сущностей канонической схемы.
    Ограничения:
        - Без собственной конкурентности и I/O.
        - Контекст не мутирует: индексирование делает цикл приёма до convert().
        - stream=None у трансформеров без собственного потока (резервный);
          source по умолчанию для их сущностей берётся из потока записи.
    """

    stream: StreamName | None

    def destination_types(self) -> Sequence[str]: ...

    def dependencies(self) -> Sequence[StreamName]: ...

    def extract_key(self, record: SourceRecord) -> Any | None: ...

    def convert(self, record: SourceRecord, context: "ContextView") -> Sequence[ConvertedItem]: ...

    def on_processing_complete(self, context: "ContextView") -> Sequence[ConvertedItem]: ...


class BaseTransformUnit:
    """
    Назначение:
        Базовый трансформер с умолчаниями: без зависимостей, ключ из поля id,
        без дополнительных сущностей по завершении.
    """

    stream: StreamName | None = None
    key_field: str = "id"

    def destination_types(self) -> Sequence[str]:
        return ()

    def dependencies(self) -> Sequence[StreamName]:
        return ()

    def extract_key(self, record: SourceRecord) -> Any | None:
        return record.data.get(self.key_field)

    def convert(self, record: SourceRecord, context: "ContextView") -> Sequence[ConvertedItem]:
        raise NotImplementedError

    def on_processing_complete(self, context: "ContextView") -> Sequence[ConvertedItem]:
        return ()


def normalize_entries(result: Any, default_source: str | None = None) -> list[DestinationEntry]:
    """
    Назначение:
        Проверяет форму результата convert() и приводит его к DestinationEntry.

    Контракт:
        - result: list/tuple из DestinationEntry или пар (type, payload).
        - type - непустая строка, payload - dict.
        - Если в payload нет 'source', проставляется default_source.

    Ошибки:
        ValueError с описанием нарушения формы (цикл приёма оборачивает его в ConversionError).
    """
    if not isinstance(result, (list, tuple)):
        raise ValueError("Invalid results: not an array")
    entries: list[DestinationEntry] = []
    for item in result:
        if isinstance(item, DestinationEntry):
            entry_type, payload = item.type, item.payload
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            entry_type, payload = item
        else:
            raise ValueError("Invalid result: expected (type, payload) pair")
        if not isinstance(entry_type, str) or not entry_type:
            raise ValueError("Invalid result: undefined type")
        if payload is None:
            raise ValueError("Invalid result: undefined payload")
        if not isinstance(payload, dict):
            raise ValueError("Invalid result: payload is not an object")
        if default_source and not payload.get("source"):
            payload = {**payload, "source": default_source}
        entries.append(DestinationEntry(type=entry_type, payload=payload))
    return entries
