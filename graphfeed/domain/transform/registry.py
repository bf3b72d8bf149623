from __future__ import annotations

from enum import Enum
from typing import Callable, Iterable, Mapping

from graphfeed.domain.stream_name import StreamName
from graphfeed.domain.transform.unit import TransformUnit

TransformFactory = Callable[[], TransformUnit]


class FallbackMode(str, Enum):
    """
    Назначение:
        Когда применять резервный трансформер.
    """

    FALLBACK = "fallback"
    OVERRIDE = "override"

    @classmethod
    def parse(cls, value: str | "FallbackMode") -> "FallbackMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError as exc:
            allowed = ",".join(item.value for item in cls)
            raise ValueError(f"Invalid fallback mode {value}. Possible values are {allowed}") from exc


class TransformRegistry:
    """
    Назначение/ответственность:
        Реестр трансформеров на один запуск: поток -> TransformUnit.

    Алгоритм resolve():
        - OVERRIDE-режим с резервным трансформером: всегда он.
        - Явная регистрация (register) - тестовые дублёры, переопределения.
        - Таблица фабрик: экземпляр создаётся один раз и кэшируется.
        - Промах кэшируется как промах; в FALLBACK-режиме отдаётся резервный трансформер.
    Инварианты/гарантии:
        - Никаких модульных глобальных изменяемых реестров; таблица фабрик только читается.
        - Ошибка фабрики не фатальна: кэшируется как промах, текст в load_errors.
    """

    def __init__(
        self,
        factories: Mapping[str, TransformFactory] | None = None,
        fallback: TransformUnit | None = None,
        fallback_mode: FallbackMode | str = FallbackMode.FALLBACK,
    ) -> None:
        self._factories: dict[str, TransformFactory] = {}
        for stream, factory in (factories or {}).items():
            self._factories[_key(stream)] = factory
        self._explicit: dict[str, TransformUnit] = {}
        self._cache: dict[str, TransformUnit | None] = {}
        self._fallback = fallback
        self._fallback_mode = FallbackMode.parse(fallback_mode)
        self.load_errors: dict[str, str] = {}

    def register(self, stream: StreamName | str, unit: TransformUnit) -> None:
        key = _key(stream)
        self._explicit[key] = unit
        self._cache.pop(key, None)
        self.load_errors.pop(key, None)

    def resolve(self, stream: StreamName | str) -> TransformUnit | None:
        if self._fallback is not None and self._fallback_mode is FallbackMode.OVERRIDE:
            return self._fallback
        unit = self._resolve_own(_key(stream))
        if unit is None:
            return self._fallback
        return unit

    def has_own(self, stream: StreamName | str) -> bool:
        """True, если resolve() отдаёт собственный трансформер потока, а не резервный."""
        unit = self.resolve(stream)
        return unit is not None and unit is not self._fallback

    def resolved_units(self) -> list[TransformUnit]:
        units: list[TransformUnit] = []
        seen: set[int] = set()
        for unit in [*self._explicit.values(), *self._cache.values(), self._fallback]:
            if unit is None or id(unit) in seen:
                continue
            seen.add(id(unit))
            units.append(unit)
        return units

    def known_streams(self) -> list[str]:
        return sorted({*self._explicit.keys(), *self._factories.keys()})

    def _resolve_own(self, key: str) -> TransformUnit | None:
        if key in self._explicit:
            return self._explicit[key]
        if key in self._cache:
            return self._cache[key]
        unit: TransformUnit | None = None
        factory = self._factories.get(key)
        if factory is not None:
            try:
                unit = factory()
            except Exception as exc:
                self.load_errors[key] = f"{type(exc).__name__}: {exc}"
                unit = None
        self._cache[key] = unit
        return unit


def _key(stream: StreamName | str) -> str:
    if isinstance(stream, StreamName):
        return stream.as_string
    return StreamName.from_string(stream).as_string


def build_registry(
    factories: Mapping[str, TransformFactory] | None,
    overrides: Iterable[tuple[StreamName | str, TransformUnit]] = (),
    fallback: TransformUnit | None = None,
    fallback_mode: FallbackMode | str = FallbackMode.FALLBACK,
) -> TransformRegistry:
    registry = TransformRegistry(factories=factories, fallback=fallback, fallback_mode=fallback_mode)
    for stream, unit in overrides:
        registry.register(stream, unit)
    return registry
