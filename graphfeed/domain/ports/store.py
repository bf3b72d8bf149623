from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence


@dataclass(frozen=True)
class RevisionHandle:
    """
    Назначение:
        Непрозрачный дескриптор атомарной ревизии в хранилище.
    """

    uid: str
    origin: str
    meta: dict[str, Any] = field(default_factory=dict)


class RevisionStoreProtocol(Protocol):
    """
    Назначение/ответственность:
        Порт графового хранилища: три операции, которыми пользуется пайплайн.
    Взаимодействия:
        Реализации инкапсулируют HTTP/ретраи/таймауты и бросают WriteError.
    Ограничения:
        Синхронное выполнение; ревизия либо активируется целиком, либо нет.
    """

    def open_revision(self, origin: str, delete_models: Sequence[str] = ()) -> RevisionHandle:
        """
        Контракт:
            Вход: origin (имя источника ревизии), модели для очистки.
            Выход: RevisionHandle.
        Ошибки/исключения:
            WriteError - открыть ревизию не удалось.
        """
        ...

    def append_entries(self, handle: RevisionHandle, entries: Sequence[dict[str, Any]]) -> None:
        """
        Контракт:
            entries в wire-форме {type: payload}.
        Ошибки/исключения:
            WriteError.
        """
        ...

    def close_revision(self, handle: RevisionHandle, commit: bool) -> None:
        """
        Контракт:
            commit=True - активировать ревизию, иначе оставить неактивной.
        Ошибки/исключения:
            WriteError.
        """
        ...
