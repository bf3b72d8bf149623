from __future__ import annotations

from typing import Any, Sequence

from graphfeed.domain.error_codes import ErrorCode
from graphfeed.domain.exceptions import WriteError
from graphfeed.domain.ports.store import RevisionHandle, RevisionStoreProtocol
from graphfeed.infra.http.graph_client import ApiError, GraphApiClient

REVISION_STATUS_ACTIVE = "active"
REVISION_STATUS_INACTIVE = "inactive"


class GraphRevisionStore(RevisionStoreProtocol):
    """
    Назначение/ответственность:
        Адаптер RevisionStoreProtocol поверх GraphApiClient.
        Маппит ApiError в WriteError с унифицированным кодом.
    Ограничения:
        - Синхронное выполнение; ретраи и таймауты - на стороне клиента.
        - Любая ошибка здесь фатальна для запуска.
    """

    def __init__(self, client: GraphApiClient, graph: str, expiration: str | None = None):
        self.client = client
        self._graph = graph
        self._expiration = expiration

    def open_revision(self, origin: str, delete_models: Sequence[str] = ()) -> RevisionHandle:
        try:
            revision = self.client.createRevision(
                self._graph,
                origin,
                expiration=self._expiration,
                deleteModels=list(delete_models),
            )
        except ApiError as err:
            raise self._to_write_error(err, "open") from err
        return RevisionHandle(uid=str(revision["uid"]), origin=origin, meta={"graph": self._graph})

    def append_entries(self, handle: RevisionHandle, entries: Sequence[dict[str, Any]]) -> None:
        try:
            self.client.appendEntries(self._graph, handle.uid, list(entries))
        except ApiError as err:
            raise self._to_write_error(err, "append") from err

    def close_revision(self, handle: RevisionHandle, commit: bool) -> None:
        status = REVISION_STATUS_ACTIVE if commit else REVISION_STATUS_INACTIVE
        try:
            self.client.updateRevisionStatus(self._graph, handle.uid, status)
        except ApiError as err:
            raise self._to_write_error(err, "close") from err

    def _to_write_error(self, err: ApiError, operation: str) -> WriteError:
        """
        Алгоритм:
            - NETWORK_ERROR/TIMEOUT -> NETWORK_ERROR.
            - INVALID_JSON -> INVALID_JSON.
            - HTTP_* -> по статусу (401/403/404/прочие).
            - Иначе WRITE_ERROR.
        """
        status_code = getattr(err, "status_code", None)
        code = self._map_error_code(err.code, status_code)
        parts = [f"Failed to {operation} revision on graph {self._graph}: {err.message}"]
        snippet = getattr(err, "body_snippet", None)
        if snippet:
            parts.append(snippet)
        return WriteError(
            " | ".join(parts),
            operation=operation,
            code=code,
            status_code=status_code,
            retryable=err.retryable,
        )

    @staticmethod
    def _map_error_code(code: str | None, status_code: int | None) -> ErrorCode:
        if code in ("NETWORK_ERROR", "TIMEOUT"):
            return ErrorCode.NETWORK_ERROR
        if code == "INVALID_JSON":
            return ErrorCode.INVALID_JSON
        if code and code.startswith("HTTP_"):
            return ErrorCode.from_status(status_code)
        return ErrorCode.WRITE_ERROR
