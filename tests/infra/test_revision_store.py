from __future__ import annotations

import httpx
import pytest

from graphfeed.domain.error_codes import ErrorCode
from graphfeed.domain.exceptions import WriteError
from graphfeed.domain.ports.store import RevisionHandle
from graphfeed.infra.http.graph_client import GraphApiClient
from graphfeed.infra.http.revision_store import GraphRevisionStore


def make_store(responder) -> GraphRevisionStore:
    client = GraphApiClient(
        baseUrl="https://graph.local",
        apiKey="key",
        retries=0,
        retryBackoffSeconds=0,
        transport=httpx.MockTransport(responder),
    )
    return GraphRevisionStore(client, "default")


def test_open_revision_returns_handle():
    store = make_store(lambda request: httpx.Response(200, json={"revision": {"uid": "rev-9"}}))

    handle = store.open_revision("mygh", ["vcs_Repository"])

    assert handle.uid == "rev-9"
    assert handle.origin == "mygh"
    assert handle.meta == {"graph": "default"}


def test_close_sends_inactive_without_commit():
    statuses: list[bytes] = []

    def responder(request: httpx.Request) -> httpx.Response:
        statuses.append(request.content)
        return httpx.Response(200, json={})

    store = make_store(responder)
    store.close_revision(RevisionHandle(uid="rev-1", origin="o"), commit=False)
    store.close_revision(RevisionHandle(uid="rev-1", origin="o"), commit=True)

    assert b'"inactive"' in statuses[0]
    assert b'"active"' in statuses[1]


@pytest.mark.parametrize(
    "status, code",
    [(401, ErrorCode.UNAUTHORIZED), (403, ErrorCode.FORBIDDEN), (404, ErrorCode.NOT_FOUND), (500, ErrorCode.HTTP_ERROR)],
)
def test_api_errors_become_write_errors(status, code):
    store = make_store(lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(WriteError) as exc:
        store.append_entries(RevisionHandle(uid="rev-1", origin="o"), [{"t": {}}])

    assert exc.value.code == code.value
    assert exc.value.operation == "append"
    assert exc.value.status_code == status
    assert "nope" in exc.value.message


def test_network_error_maps_to_network_code():
    def responder(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    store = make_store(responder)

    with pytest.raises(WriteError) as exc:
        store.open_revision("o")
    assert exc.value.code == ErrorCode.NETWORK_ERROR.value
