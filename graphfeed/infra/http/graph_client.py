from __future__ import annotations

import time
from typing import Any

import httpx

from graphfeed.errors import AppError


class ApiError(AppError):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body_snippet: str | None = None,
        retryable: bool = False,
        details: dict | None = None,
        code: str | None = None,
    ):
        """
        Назначение:
            Исключение для ошибок HTTP/API уровня GraphApiClient.
        Контракт:
            - code: строковый код (HTTP_*, NETWORK_ERROR, INVALID_JSON и т.п.).
            - status_code/body_snippet используются для диагностики.
        """
        super().__init__(
            category="api",
            code=code or (f"HTTP_{status_code}" if status_code else "API_ERROR"),
            message=message,
            retryable=retryable,
            details=details or {},
        )
        self.status_code = status_code
        self.body_snippet = body_snippet


class GraphApiClient:
    def __init__(
        self,
        baseUrl: str,
        apiKey: str,
        timeoutSeconds: float = 20.0,
        tlsSkipVerify: bool = False,
        caFile: str | None = None,
        retries: int = 3,
        retryBackoffSeconds: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Назначение:
            Клиент API графового хранилища с простой политикой ретраев.
        Контракт:
            - baseUrl и apiKey обязательны.
            - retries/retryBackoffSeconds управляют повторными попытками;
              таймауты и сетевые ошибки ретраятся так же, как 429/5xx.
        """
        verify: bool | str = True
        if tlsSkipVerify:
            verify = False
        elif caFile:
            verify = caFile

        self.baseUrl = baseUrl.rstrip("/")
        self.apiKey = apiKey
        self.retries = retries
        self.retryBackoffSeconds = retryBackoffSeconds
        self.retry_attempts = 0
        self.requests_sent = 0

        self.client = httpx.Client(
            base_url=self.baseUrl,
            timeout=timeoutSeconds,
            verify=verify,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def getRetryAttempts(self) -> int:
        """Возвращает количество выполненных повторных попыток."""
        return self.retry_attempts

    def _headers(self) -> dict[str, str]:
        return {
            "accept": "application/json",
            "content-type": "application/json",
            "authorization": self.apiKey,
        }

    def _should_retry(self, resp: httpx.Response) -> bool:
        """Решает, стоит ли повторить запрос (429 или 5xx)."""
        if resp.status_code == 429:
            return True
        if 500 <= resp.status_code <= 599:
            return True
        return False

    def _sleep_backoff(self, attempt: int) -> None:
        """Задержка с экспоненциальным ростом для ретраев."""
        delay = self.retryBackoffSeconds * (2 ** attempt)
        time.sleep(delay)

    def requestJson(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        jsonBody: Any | None = None,
        expectedStatuses: tuple[int, ...] = (200, 201, 202, 204),
    ) -> tuple[int, Any]:
        """
        Универсальный JSON-запрос с ретраями и проверкой статуса.
        Возвращает (status_code, json|None) или бросает ApiError.
        """
        params = params or {}
        attempt = 0
        while True:
            try:
                self.requests_sent += 1
                resp = self.client.request(method, path, params=params, headers=self._headers(), json=jsonBody)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if attempt >= self.retries:
                    code = "TIMEOUT" if isinstance(exc, httpx.TimeoutException) else "NETWORK_ERROR"
                    raise ApiError(f"Network error: {exc}", status_code=None, retryable=False, code=code) from exc
                self.retry_attempts += 1
                self._sleep_backoff(attempt)
                attempt += 1
                continue

            if resp.status_code in expectedStatuses:
                if not resp.text:
                    return resp.status_code, None
                try:
                    return resp.status_code, resp.json()
                except ValueError as exc:
                    raise ApiError(
                        "Invalid JSON response",
                        status_code=resp.status_code,
                        retryable=False,
                        code="INVALID_JSON",
                    ) from exc

            if self._should_retry(resp) and attempt < self.retries:
                self.retry_attempts += 1
                self._sleep_backoff(attempt)
                attempt += 1
                continue

            body_snippet = resp.text[:200] if resp.text else None
            raise ApiError(
                f"HTTP {resp.status_code}",
                status_code=resp.status_code,
                body_snippet=body_snippet,
                retryable=self._should_retry(resp),
                details={"body_snippet": body_snippet},
            )

    def getGraph(self, graph: str) -> Any:
        """GET /graphs/{graph}; 404 -> ApiError с code=HTTP_404."""
        _, data = self.requestJson("GET", f"/graphs/{graph}", expectedStatuses=(200,))
        return data

    def createRevision(
        self,
        graph: str,
        origin: str,
        expiration: str | None = None,
        deleteModels: list[str] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"origin": origin, "deleteModels": deleteModels or []}
        if expiration:
            body["expiration"] = expiration
        _, data = self.requestJson("POST", f"/graphs/{graph}/revisions", jsonBody=body, expectedStatuses=(200, 201))
        revision = data.get("revision") if isinstance(data, dict) else None
        if not isinstance(revision, dict) or not revision.get("uid"):
            raise ApiError("Unexpected response format: no revision uid", code="INVALID_REVISION", retryable=False)
        return revision

    def appendEntries(self, graph: str, revisionUid: str, entries: list[dict[str, Any]]) -> None:
        self.requestJson(
            "POST",
            f"/graphs/{graph}/revisions/{revisionUid}/entries",
            jsonBody={"entries": entries},
            expectedStatuses=(200, 201, 202, 204),
        )

    def updateRevisionStatus(self, graph: str, revisionUid: str, status: str) -> None:
        self.requestJson(
            "PATCH",
            f"/graphs/{graph}/revisions/{revisionUid}",
            jsonBody={"status": status},
            expectedStatuses=(200, 204),
        )
