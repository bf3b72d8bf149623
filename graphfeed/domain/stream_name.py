from __future__ import annotations

from dataclasses import dataclass

from graphfeed.domain.exceptions import MalformedStreamName

STREAM_NAME_SEPARATOR = "__"


@dataclass(frozen=True)
class StreamName:
    """
    Назначение:
        Двухчастное имя потока (origin, name), например github__commits.

    Инварианты/гарантии:
        - origin и name непустые, origin без "__".
        - origin хранится в нижнем регистре.
        - Пара, которую from_string не восстановит из as_string, отвергается
          (MalformedStreamName).
        - as_string - каноническая форма, биективна паре (origin, name);
          используется ключом во всех словарях пайплайна.
    """

    origin: str
    name: str

    def __post_init__(self) -> None:
        if not self.origin or not self.name:
            raise MalformedStreamName(
                f"{self.origin}{STREAM_NAME_SEPARATOR}{self.name}",
                "origin and name must be non-empty",
            )
        object.__setattr__(self, "origin", self.origin.lower())
        value = self.as_string
        if STREAM_NAME_SEPARATOR in self.origin:
            raise MalformedStreamName(value, f"origin must not contain '{STREAM_NAME_SEPARATOR}'")
        if _split_origin_name(value) != (self.origin, self.name):
            raise MalformedStreamName(value, f"name '{self.name}' does not round-trip through '{value}'")

    @property
    def as_string(self) -> str:
        return f"{self.origin}{STREAM_NAME_SEPARATOR}{self.name}"

    def __str__(self) -> str:
        return self.as_string

    @classmethod
    def from_string(cls, value: str) -> "StreamName":
        """
        Назначение:
            Разбор имени потока из строки.

        Алгоритм:
            - Делим по '__'; меньше двух частей - ошибка.
            - Лишние ведущие части считаются префиксом подключения и отбрасываются.
            - Если последняя часть короче 3 символов, имя склеивается обратно
              (split с лимитом 2, либо 3 при более чем трёх частях).
        """
        origin, name = _split_origin_name(value)
        return cls(origin=origin, name=name)


def _split_origin_name(value: str) -> tuple[str, str]:
    if not value:
        raise MalformedStreamName(value, "empty stream name")
    parts = value.split(STREAM_NAME_SEPARATOR)
    if len(parts) < 2:
        raise MalformedStreamName(
            value, f"missing origin prefix (e.g 'github{STREAM_NAME_SEPARATOR}')"
        )
    if len(parts[-1]) < 3:
        parts = split_with_limit(value, STREAM_NAME_SEPARATOR, 3 if len(parts) > 3 else 2)
    origin, name = parts[-2], parts[-1]
    if not origin or not name:
        raise MalformedStreamName(value, "origin and name must be non-empty")
    return origin.lower(), name


def split_with_limit(value: str, separator: str, limit: int) -> list[str]:
    """Как str.split(sep, limit - 1), но остаток склеивается в последний элемент."""
    parts = value.split(separator)
    if len(parts) <= limit:
        return parts
    head = parts[: limit - 1]
    head.append(separator.join(parts[limit - 1 :]))
    return head


def connection_prefix(value: str) -> str:
    """Первая часть имени потока (до первого разделителя)."""
    return value.split(STREAM_NAME_SEPARATOR, 1)[0]
