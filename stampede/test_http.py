"""
Tests for the per-VU HTTP client, using httpx.MockTransport.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio

from .config import HttpOptions
from .http import ERROR_CONNECT, ERROR_TIMEOUT, HttpClient, Response
from .metrics import (
    DATA_RECEIVED,
    DATA_SENT,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
)
from .models import IterationInterrupted, TagSet

BASE = "http://api.test"


@pytest_asyncio.fixture
async def client(registry, echo_transport):
    client = HttpClient(
        HttpOptions(user_agent="stampede-tests"),
        registry,
        tags=lambda: TagSet(scenario="api"),
        transport=echo_transport,
    )
    yield client
    await client.close()


class TestResponse:
    """Tests for the Response helpers."""

    def test_json_selector(self):
        res = Response(status=200, body=b'{"data": {"items": [{"id": 1}, {"id": 2}]}}')
        assert res.json()["data"]["items"][1]["id"] == 2
        assert res.json("data.items.1.id") == 2
        assert res.json("data.items.5.id") is None
        assert res.json("data.missing") is None
        assert res.json("data.items.x") is None

    def test_ok_and_text(self):
        assert Response(status=302).ok
        assert not Response(status=404).ok
        assert not Response(status=0).ok
        assert Response(status=200, body="héllo".encode()).text == "héllo"


class TestRequests:
    """Tests for single requests and their samples."""

    @pytest.mark.asyncio
    async def test_get_emits_default_samples(self, client, registry):
        res = await client.get(f"{BASE}/users")

        assert res.status == 200
        assert res.json("path") == "/users"
        assert res.json("items.0.id") == 7
        assert res.timings.duration >= 0

        assert registry.get(HTTP_REQS).sink.count == 1
        assert registry.get(HTTP_REQ_DURATION).sink.histogram.count == 1
        assert registry.get(HTTP_REQ_FAILED).sink.rate == 0
        assert registry.get(DATA_SENT).sink.count > 0
        assert registry.get(DATA_RECEIVED).sink.count > 0

    @pytest.mark.asyncio
    async def test_sample_tags(self, client, registry):
        url = f"{BASE}/fail"
        expected = TagSet(
            scenario="api",
            method="POST",
            url=url,
            name=url,
            status="500",
            expected_response="false",
        )
        registry.add_submetric(HTTP_REQ_FAILED, expected)

        res = await client.post(url, json={"a": 1})

        assert res.status == 500
        assert res.text == "boom"
        sub = registry.get(HTTP_REQ_FAILED).submetrics[expected]
        assert (sub.sink.passes, sub.sink.total) == (1, 1)

    @pytest.mark.asyncio
    async def test_name_tag_groups_dynamic_urls(self, client, registry):
        registry.add_submetric(HTTP_REQ_DURATION, TagSet(name="User"))
        for user_id in (1, 2, 3):
            await client.get(f"{BASE}/users/{user_id}", tags={"name": "User"})
        sub = registry.get(HTTP_REQ_DURATION).submetrics[TagSet(name="User")]
        assert sub.sink.histogram.count == 3

    @pytest.mark.asyncio
    async def test_user_agent_header(self, registry):
        seen = {}

        def handler(request):
            seen["ua"] = request.headers.get("user-agent")
            return httpx.Response(204)

        client = HttpClient(
            HttpOptions(user_agent="custom/1.0", no_connection_reuse=True),
            registry,
            transport=httpx.MockTransport(handler),
        )
        try:
            res = await client.head(f"{BASE}/")
        finally:
            await client.close()
        assert res.status == 204
        assert seen["ua"] == "custom/1.0"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,code", [
        (httpx.ConnectError("connection refused"), ERROR_CONNECT),
        (httpx.ReadTimeout("timed out"), ERROR_TIMEOUT),
    ])
    async def test_transport_errors_return_status_zero(self, registry, error, code):
        def handler(request):
            raise error

        client = HttpClient(HttpOptions(), registry, transport=httpx.MockTransport(handler))
        try:
            res = await client.get(f"{BASE}/down")
        finally:
            await client.close()

        assert res.status == 0
        assert res.error_code == code
        assert res.error
        assert registry.get(HTTP_REQ_FAILED).sink.rate == 1
        assert registry.get(DATA_RECEIVED).sink.count == 0

    @pytest.mark.asyncio
    async def test_unknown_arguments_rejected(self, client):
        with pytest.raises(TypeError):
            await client.get(f"{BASE}/", verify=False)

    @pytest.mark.asyncio
    async def test_interrupted_vu_does_not_send(self, registry, echo_transport):
        interrupt = asyncio.Event()
        interrupt.set()
        client = HttpClient(HttpOptions(), registry, interrupt=interrupt, transport=echo_transport)
        try:
            with pytest.raises(IterationInterrupted):
                await client.get(f"{BASE}/")
        finally:
            await client.close()
        assert registry.get(HTTP_REQS).sink.empty


class TestBatch:
    """Tests for concurrent batches."""

    @pytest.mark.asyncio
    async def test_results_keep_request_order(self, client):
        responses = await client.batch([
            ("GET", f"{BASE}/a"),
            ("POST", f"{BASE}/b", {"json": {"x": 1}}),
            {"method": "GET", "url": f"{BASE}/missing"},
            {"url": f"{BASE}/c"},
        ])
        assert [r.status for r in responses] == [200, 200, 404, 200]
        assert responses[0].json("path") == "/a"
        assert responses[3].json("path") == "/c"

    @pytest.mark.asyncio
    async def test_per_host_limit(self, registry):
        in_flight = {"now": 0, "peak": 0}

        async def handler(request):
            in_flight["now"] += 1
            in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
            await asyncio.sleep(0.02)
            in_flight["now"] -= 1
            return httpx.Response(200)

        client = HttpClient(
            HttpOptions(batch=10, batch_per_host=2),
            registry,
            transport=httpx.MockTransport(handler),
        )
        try:
            responses = await client.batch([("GET", f"{BASE}/{i}") for i in range(6)])
        finally:
            await client.close()

        assert len(responses) == 6
        assert in_flight["peak"] == 2
        assert registry.get(HTTP_REQS).sink.count == 6

    @pytest.mark.asyncio
    @pytest.mark.parametrize("spec", [("GET",), {"method": "GET"}, "GET /"])
    async def test_invalid_batch_entries(self, client, spec):
        with pytest.raises(ValueError):
            await client.batch([spec])
