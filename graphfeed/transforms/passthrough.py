from __future__ import annotations

from typing import Sequence

from graphfeed.domain.models import DestinationEntry, SourceRecord
from graphfeed.domain.stream_name import StreamName
from graphfeed.domain.transform import BaseTransformUnit, ContextView


class PassthroughTransform(BaseTransformUnit):
    """
    Назначение:
        Резервный трансформер: запись целиком становится одной сущностью
        заданного типа (--fallback-type).
    """

    stream: StreamName | None = None

    def __init__(self, destination_type: str) -> None:
        if not destination_type:
            raise ValueError("destination_type is required for passthrough transform")
        self.destination_type = destination_type

    def destination_types(self) -> Sequence[str]:
        return (self.destination_type,)

    def convert(self, record: SourceRecord, context: ContextView) -> Sequence[DestinationEntry]:
        return [DestinationEntry(self.destination_type, dict(record.data))]
