import httpx
import pytest

import tide.tide_http as tide_http
from tide.tide_http import HttpError, http_get, http_post, http_request
from tide.tide_runtime import ScriptRunner


class DummyResp:
    def __init__(self, status, content, headers):
        self.status_code = status
        self.content = content
        self.headers = headers
        self.text = content.decode("utf-8", errors="ignore")


def install_client(monkeypatch, responses, seen=None):
    """Replace httpx.AsyncClient with one that replays `responses` in order."""
    queue = list(responses)

    class DummyAsyncClient:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def request(self, method, url, headers=None, params=None, content=None):
            if seen is not None:
                seen.append({"method": method, "url": url, "headers": headers, "params": params,
                             "content": content})
            item = queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

    monkeypatch.setattr(tide_http.httpx, "AsyncClient", DummyAsyncClient)


def json_resp(status=200, body=b'{"hello": "world"}'):
    return DummyResp(status, body, {"Content-Type": "application/json"})


@pytest.mark.asyncio
async def test_get_deserializes_by_content_type(monkeypatch):
    install_client(monkeypatch, [json_resp()])
    assert await http_get("http://example/api", {"retries": 0}) == {"hello": "world"}


@pytest.mark.asyncio
async def test_raw_and_full_modes(monkeypatch):
    install_client(monkeypatch, [json_resp(), json_resp(404, b"missing")])
    assert await http_request("GET", "http://example/api", config={"raw": True, "retries": 0}) == '{"hello": "world"}'
    full = await http_request("GET", "http://example/api", config={"full": True, "retries": 0})
    assert full["status"] == 404
    assert full["headers"]["content-type"] == "application/json"
    assert full["body"] == "missing"


@pytest.mark.asyncio
async def test_non_2xx_raises(monkeypatch):
    install_client(monkeypatch, [DummyResp(404, b"nope", {})])
    with pytest.raises(HttpError) as info:
        await http_get("http://example/missing", {"retries": 0})
    assert info.value.status == 404


@pytest.mark.asyncio
async def test_server_errors_and_transport_errors_are_retried(monkeypatch):
    install_client(monkeypatch, [httpx.ConnectError("down"), DummyResp(503, b"", {}), json_resp()])
    out = await http_get("http://example/api", {"retries": 2, "backoff": 0})
    assert out == {"hello": "world"}


@pytest.mark.asyncio
async def test_post_sends_text_body(monkeypatch):
    seen = []
    install_client(monkeypatch, [json_resp()], seen)
    await http_post("http://example/api", "payload", {"retries": 0, "headers": {"X-Test": "1"}})
    assert seen[0]["method"] == "POST"
    assert seen[0]["content"] == b"payload"
    assert seen[0]["headers"]["Content-Type"].startswith("text/plain")
    assert seen[0]["headers"]["X-Test"] == "1"


@pytest.mark.asyncio
async def test_http_get_command(monkeypatch):
    install_client(monkeypatch, [json_resp(), json_resp(500, b"boom")])
    runner = ScriptRunner(platform="linux")
    res = await runner.handle_script("http get http://example/api | get hello")
    assert res.status == 'success', res.error_message
    assert res.value == "world"


@pytest.mark.asyncio
async def test_http_get_command_error(monkeypatch):
    install_client(monkeypatch, [DummyResp(404, b"gone", {})] * 5)
    runner = ScriptRunner(platform="linux")
    res = await runner.handle_script("http get http://example/missing")
    assert res.status == 'error'
    assert "404" in res.error_message
