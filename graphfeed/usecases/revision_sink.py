from __future__ import annotations

from typing import Sequence

from graphfeed.domain.exceptions import WriteError
from graphfeed.domain.models import DestinationEntry
from graphfeed.domain.ports.store import RevisionHandle, RevisionStoreProtocol
from graphfeed.domain.stats import RunStats

DRY_RUN_REVISION_UID = "dry-run"


class RevisionSink:
    """
    Назначение/ответственность:
        Открывает одну атомарную ревизию, накапливает сущности пачками
        и закрывает её с commit/без commit.

    Инварианты/гарантии:
        - open() вызывается один раз; append до open или после close - WriteError.
        - close() идемпотентен; при commit=True сначала досылается буфер.
        - Частичной активации нет: хранилище видит либо всё, либо ничего.
        - dry_run: те же шаги и счётчики, ноль обращений к хранилищу.
    """

    def __init__(
        self,
        store: RevisionStoreProtocol | None,
        stats: RunStats,
        *,
        origin: str,
        delete_models: Sequence[str] = (),
        batch_size: int = 500,
        dry_run: bool = False,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if store is None and not dry_run:
            raise ValueError("store is required unless dry_run is enabled")
        self._store = store
        self._stats = stats
        self._origin = origin
        self._delete_models = tuple(delete_models)
        self._batch_size = batch_size
        self._dry_run = dry_run
        self._buffer: list[dict] = []
        self._handle: RevisionHandle | None = None
        self._closed = False
        self.committed = False
        self.batches_sent = 0
        self.discard_error: WriteError | None = None

    @property
    def handle(self) -> RevisionHandle | None:
        return self._handle

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def open(self) -> RevisionHandle:
        if self._handle is not None:
            raise WriteError("Revision is already open", operation="open")
        if self._dry_run:
            self._handle = RevisionHandle(uid=DRY_RUN_REVISION_UID, origin=self._origin)
        else:
            self._handle = self._store.open_revision(self._origin, self._delete_models)
        return self._handle

    def append(self, entry: DestinationEntry) -> None:
        if self._handle is None or self._closed:
            raise WriteError("Revision is not open", operation="append")
        self._stats.increment_written_by_type(entry.type)
        if self._dry_run:
            return
        self._buffer.append(entry.to_wire())
        if len(self._buffer) >= self._batch_size:
            self._flush()

    def close(self, commit: bool) -> None:
        if self._closed:
            return
        self._closed = True
        if self._handle is None:
            return
        if self._dry_run:
            self.committed = commit
            return
        if not commit:
            self._buffer.clear()
            self._store.close_revision(self._handle, False)
            return
        try:
            self._flush()
            self._store.close_revision(self._handle, True)
        except WriteError:
            self._discard_after_failed_commit()
            raise
        self.committed = True

    def _discard_after_failed_commit(self) -> None:
        # Ревизия не должна остаться открытой после неудачного commit.
        self._buffer.clear()
        try:
            self._store.close_revision(self._handle, False)
        except WriteError as exc:
            self.discard_error = exc

    def _flush(self) -> None:
        if not self._buffer:
            return
        batch = list(self._buffer)
        self._buffer.clear()
        self._store.append_entries(self._handle, batch)
        self.batches_sent += 1
