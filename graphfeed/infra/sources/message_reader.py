from __future__ import annotations

import json
import sys
from typing import IO, Any, Iterable, Iterator, Union

from graphfeed.domain.exceptions import MalformedInput
from graphfeed.domain.models import Checkpoint, InputMessage, MessageKind, SourceRecord

RAW_STREAM_PREFIX = "_airbyte_raw_"
RAW_DATA_FIELD = "_airbyte_data"
RAW_EMITTED_AT_FIELD = "_airbyte_emitted_at"

OTHER_MESSAGE_TYPES = frozenset({"LOG", "TRACE", "SPEC", "CATALOG", "CONNECTION_STATUS", "CONTROL"})

RawLine = Union[str, bytes]


class JsonlMessageSource:
    """
    Назначение/ответственность:
        Построчное чтение входа (файл или '-' для stdin) без разбора.
        Отдаёт пары (line_no, text); пустые строки пропускает.
        Файл и stdin читаются байтами; декодирование построчно в parse_message.
    Ограничения:
        - Ленивое чтение: одна строка в памяти за раз.
    """

    def __init__(self, path: str, stdin: IO[Any] | None = None) -> None:
        self.path = path
        self._stdin = stdin

    def __iter__(self) -> Iterator[tuple[int, RawLine]]:
        if self.path == "-":
            stdin = self._stdin or sys.stdin
            yield from iter_lines(getattr(stdin, "buffer", stdin))
            return
        with open(self.path, "rb") as f:
            yield from iter_lines(f)


def iter_lines(lines: Iterable[RawLine]) -> Iterator[tuple[int, RawLine]]:
    for line_no, line in enumerate(lines, start=1):
        text = line.strip()
        if not text:
            continue
        yield line_no, text


def parse_message(text: RawLine, line_no: int) -> InputMessage:
    """
    Назначение:
        Разбор одной строки протокола в InputMessage.

    Контракт:
        - RECORD -> kind=RECORD, record=SourceRecord.
        - STATE -> kind=STATE, checkpoint=Checkpoint.
        - LOG/TRACE/SPEC/... -> kind=OTHER.

    Ошибки:
        MalformedInput с номером строки для невалидного UTF-8, невалидного JSON
        и неверной формы.
    """
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedInput(f"Invalid UTF-8 at line {line_no}: {exc}", line_no=line_no) from exc
    try:
        message = json.loads(text)
    except ValueError as exc:
        raise MalformedInput(f"Invalid JSON at line {line_no}: {exc}", line_no=line_no) from exc
    if not isinstance(message, dict):
        raise MalformedInput(f"Message at line {line_no} is not an object", line_no=line_no)

    msg_type = message.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MalformedInput(f"Message at line {line_no} has no type", line_no=line_no)
    msg_type = msg_type.upper()

    if msg_type == MessageKind.RECORD.value:
        record = _parse_record(message.get("record"), line_no)
        return InputMessage(kind=MessageKind.RECORD, line_no=line_no, record=record, raw_type=msg_type)
    if msg_type == MessageKind.STATE.value:
        state = message.get("state")
        data = state.get("data") if isinstance(state, dict) else None
        if not isinstance(data, dict):
            raise MalformedInput(f"STATE message at line {line_no} has no data", line_no=line_no)
        return InputMessage(
            kind=MessageKind.STATE,
            line_no=line_no,
            checkpoint=Checkpoint(data=data, line_no=line_no),
            raw_type=msg_type,
        )
    if msg_type in OTHER_MESSAGE_TYPES:
        return InputMessage(kind=MessageKind.OTHER, line_no=line_no, raw_type=msg_type)
    raise MalformedInput(f"Unknown message type {msg_type} at line {line_no}", line_no=line_no)


def _parse_record(record: Any, line_no: int) -> SourceRecord:
    if not isinstance(record, dict):
        raise MalformedInput(f"RECORD message at line {line_no} has no record", line_no=line_no)
    stream = record.get("stream")
    if not isinstance(stream, str) or not stream:
        raise MalformedInput(f"RECORD message at line {line_no} has no stream", line_no=line_no)
    data = record.get("data")
    if not isinstance(data, dict):
        raise MalformedInput(
            f"RECORD message at line {line_no} has non-object data", line_no=line_no, stream=stream
        )
    emitted_at = record.get("emitted_at")
    if stream.startswith(RAW_STREAM_PREFIX):
        return _unpack_raw(stream, data, line_no)
    return SourceRecord(stream=stream, data=data, emitted_at=_as_int(emitted_at), line_no=line_no)


def _unpack_raw(stream: str, data: dict[str, Any], line_no: int) -> SourceRecord:
    """Запись raw-таблицы: поток без префикса, данные из JSON в _airbyte_data."""
    unpacked_stream = stream[len(RAW_STREAM_PREFIX):]
    raw_data = data.get(RAW_DATA_FIELD)
    if isinstance(raw_data, str):
        try:
            raw_data = json.loads(raw_data)
        except ValueError as exc:
            raise MalformedInput(
                f"Invalid {RAW_DATA_FIELD} at line {line_no}: {exc}", line_no=line_no, stream=unpacked_stream
            ) from exc
    if not isinstance(raw_data, dict):
        raise MalformedInput(
            f"{RAW_DATA_FIELD} at line {line_no} is not an object", line_no=line_no, stream=unpacked_stream
        )
    return SourceRecord(
        stream=unpacked_stream,
        data=raw_data,
        emitted_at=_as_int(data.get(RAW_EMITTED_AT_FIELD)),
        line_no=line_no,
    )


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None
