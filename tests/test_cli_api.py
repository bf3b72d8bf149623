import json
from pathlib import Path
from typing import Callable

import httpx
from typer.testing import CliRunner

from graphfeed.main import app

runner = CliRunner()


def make_transport(responder: Callable[[httpx.Request], httpx.Response]) -> httpx.MockTransport:
    return httpx.MockTransport(responder)


def patch_client_with_transport(monkeypatch, transport: httpx.BaseTransport):
    import graphfeed.main as cli_module
    from graphfeed.infra.http.graph_client import GraphApiClient

    def factory(*args, **kwargs):
        kwargs["transport"] = transport
        return GraphApiClient(*args, **kwargs)

    monkeypatch.setattr(cli_module, "GraphApiClient", factory)


def _api_args(tmp_path: Path, run_id: str) -> list[str]:
    return [
        "--log-dir",
        str(tmp_path / "logs"),
        "--report-dir",
        str(tmp_path / "reports"),
        "--api-url",
        "https://graph.local",
        "--api-key",
        "secret-key",
        "--graph",
        "default",
        "--retries",
        "0",
        "--run-id",
        run_id,
    ]


def test_check_api_ok(monkeypatch, tmp_path: Path):
    def responder(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/graphs/default"
        return httpx.Response(200, json={"name": "default"})

    patch_client_with_transport(monkeypatch, make_transport(responder))

    result = runner.invoke(app, [*_api_args(tmp_path, "check-ok"), "check-api"])

    assert result.exit_code == 0
    assert (tmp_path / "reports" / "report_check-api_check-ok.json").exists()
    assert "secret-key" not in result.output


def test_check_api_401(monkeypatch, tmp_path: Path):
    patch_client_with_transport(monkeypatch, make_transport(lambda request: httpx.Response(401, text="unauthorized")))

    result = runner.invoke(app, [*_api_args(tmp_path, "check-401"), "check-api"])

    assert result.exit_code == 2
    report = json.loads((tmp_path / "reports" / "report_check-api_check-401.json").read_text(encoding="utf-8"))
    assert report["status"] == "FAILED"


def test_write_commits_revision(monkeypatch, tmp_path: Path):
    requests: list[tuple[str, str, dict]] = []

    def responder(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path, json.loads(request.content)))
        if request.url.path == "/graphs/default/revisions":
            return httpx.Response(200, json={"revision": {"uid": "rev-7"}})
        return httpx.Response(204)

    patch_client_with_transport(monkeypatch, make_transport(responder))
    input_path = tmp_path / "input.jsonl"
    input_path.write_text(
        "\n".join(
            [
                json.dumps({"type": "RECORD", "record": {"stream": "example__orgs", "data": {"id": 1, "login": "acme"}}}),
                json.dumps({"type": "STATE", "state": {"data": {"cursor": 1}}}),
            ]
        ),
        encoding="utf-8",
    )

    result = runner.invoke(app, [*_api_args(tmp_path, "live-1"), "--origin", "mygh", "write", "--input", str(input_path)])

    assert result.exit_code == 0
    assert [(method, path) for method, path, _ in requests] == [
        ("POST", "/graphs/default/revisions"),
        ("POST", "/graphs/default/revisions/rev-7/entries"),
        ("PATCH", "/graphs/default/revisions/rev-7"),
    ]
    assert requests[0][2]["origin"] == "mygh"
    assert requests[1][2] == {
        "entries": [{"vcs_Organization": {"uid": "acme", "name": None, "htmlUrl": None, "source": "example"}}]
    }
    assert requests[2][2] == {"status": "active"}
    assert '"cursor": 1' in result.stdout
    report = json.loads((tmp_path / "reports" / "report_write_live-1.json").read_text(encoding="utf-8"))
    assert report["context"]["api"] == {"requests": 3, "retries": 0}


def test_write_append_failure_discards_revision(monkeypatch, tmp_path: Path):
    requests: list[tuple[str, str, dict]] = []

    def responder(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path, json.loads(request.content)))
        if request.url.path == "/graphs/default/revisions":
            return httpx.Response(200, json={"revision": {"uid": "rev-8"}})
        if request.url.path.endswith("/entries"):
            return httpx.Response(500, text="storage down")
        return httpx.Response(204)

    patch_client_with_transport(monkeypatch, make_transport(responder))
    record = json.dumps({"type": "RECORD", "record": {"stream": "example__orgs", "data": {"id": 1, "login": "acme"}}})

    result = runner.invoke(app, [*_api_args(tmp_path, "live-2"), "write", "--input", "-"], input=record + "\n")

    assert result.exit_code == 2
    assert requests[-1] == ("PATCH", "/graphs/default/revisions/rev-8", {"status": "inactive"})
    report = json.loads((tmp_path / "reports" / "report_write_live-2.json").read_text(encoding="utf-8"))
    assert report["status"] == "FAILED"
    assert report["context"]["fatal_error"]["code"] == "HTTP_ERROR"
