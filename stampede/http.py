"""
HTTP primitive used by workloads.

Each virtual user owns one ``HttpClient`` wrapping an ``httpx.AsyncClient``,
so connections and cookies persist across that VU's iterations. Every
request emits the default HTTP samples (``http_reqs``, ``http_req_duration``,
``http_req_failed``, ``data_sent``, ``data_received``). Transport errors do
not raise: they come back as a ``Response`` with status 0 and an error code.
"""

import asyncio
import json as jsonlib
import logging
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Union

import httpx

from .config import HttpOptions
from .metrics import (
    DATA_RECEIVED,
    DATA_SENT,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    MetricsRegistry,
)
from .models import EMPTY_TAGS, IterationInterrupted, TagSet

logger = logging.getLogger(__name__)

# Error codes reported for requests that never got a response
ERROR_GENERIC = 1000
ERROR_TIMEOUT = 1050
ERROR_CONNECT = 1200

BatchRequest = Union[tuple, Mapping[str, Any]]


@dataclass
class Timings:
    """Request timings in milliseconds."""

    duration: float = 0.0


@dataclass
class Response:
    """
    Outcome of one HTTP request.

    Attributes:
        status: HTTP status code, 0 when the request failed at transport level
        body: Raw response body
        headers: Response headers
        url: Final request URL
        method: Request method
        timings: Request timings
        error: Error message for transport failures
        error_code: Numeric error class for transport failures
    """

    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    url: str = ""
    method: str = "GET"
    timings: Timings = field(default_factory=Timings)
    error: str = ""
    error_code: int = 0

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    def json(self, selector: Optional[str] = None) -> Any:
        """
        Decode the body as JSON.

        Args:
            selector: Optional dotted path into the document, e.g.
                ``data.items.0.id``

        Returns:
            The decoded document, or the selected value (None if absent)
        """
        document = jsonlib.loads(self.body)
        if not selector:
            return document
        current = document
        for part in selector.split("."):
            if isinstance(current, list) and part.isdigit():
                index = int(part)
                current = current[index] if index < len(current) else None
            elif isinstance(current, dict):
                current = current.get(part)
            else:
                return None
            if current is None:
                return None
        return current


def _request_size(request: httpx.Request) -> int:
    size = len(request.method) + len(request.url.raw_path) + len(" HTTP/1.1\r\n") + 1
    size += sum(len(k) + len(v) + 4 for k, v in request.headers.raw)
    try:
        size += len(request.content)
    except httpx.RequestNotRead:
        pass
    return size + 2


def _response_size(response: httpx.Response) -> int:
    size = len(f"HTTP/1.1 {response.status_code} {response.reason_phrase}\r\n")
    size += sum(len(k) + len(v) + 4 for k, v in response.headers.raw)
    return size + 2 + len(response.content)


def _classify_error(error: httpx.HTTPError) -> int:
    if isinstance(error, httpx.TimeoutException):
        return ERROR_TIMEOUT
    if isinstance(error, httpx.ConnectError):
        return ERROR_CONNECT
    return ERROR_GENERIC


class HttpClient:
    """
    Per-VU HTTP client emitting request samples.

    Example usage:
        res = await ctx.http.get("https://api.example.com/health", tags={"name": "Health"})
        res.status, res.timings.duration
    """

    _REQUEST_KWARGS = ("params", "headers", "json", "data", "content", "files", "cookies")

    def __init__(
        self,
        options: HttpOptions,
        registry: MetricsRegistry,
        tags: Optional[Callable[[], TagSet]] = None,
        interrupt: Optional[asyncio.Event] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            options: Connection reuse, user agent, batch limits and timeout
            registry: Registry receiving the request samples
            tags: Returns the tags current at the time of a request
            interrupt: Event set when the owning VU is interrupted
            transport: Custom httpx transport (e.g. ``httpx.MockTransport``)
        """
        self.options = options
        self.registry = registry
        self._tags = tags or (lambda: EMPTY_TAGS)
        self._interrupt = interrupt
        if options.no_connection_reuse:
            limits = httpx.Limits(max_keepalive_connections=0)
        else:
            limits = httpx.Limits(max_connections=None, max_keepalive_connections=None)
        headers = {"User-Agent": options.user_agent} if options.user_agent else {}
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=options.timeout,
            verify=not options.insecure_skip_tls_verify,
            limits=limits,
            transport=transport,
            follow_redirects=True,
        )

    async def request(
        self,
        method: str,
        url: str,
        *,
        tags: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> Response:
        """
        Send a request and record its samples.

        Args:
            method: HTTP method
            url: Absolute URL
            tags: Extra tags; ``name`` groups dynamic URLs under one label
            timeout: Per-request timeout in seconds
            **kwargs: params, headers, json, data, content, files, cookies

        Returns:
            Response; status 0 with ``error``/``error_code`` on transport errors

        Raises:
            IterationInterrupted: If the VU was interrupted before sending
        """
        if self._interrupt is not None and self._interrupt.is_set():
            raise IterationInterrupted()
        unknown = set(kwargs) - set(self._REQUEST_KWARGS)
        if unknown:
            raise TypeError(f"unexpected request arguments: {', '.join(sorted(unknown))}")
        if timeout is not None:
            kwargs["timeout"] = timeout

        method = method.upper()
        request = self._client.build_request(method, url, **kwargs)
        sent = _request_size(request)
        started = time.monotonic()
        try:
            response = await self._client.send(request)
        except httpx.HTTPError as e:
            duration_ms = (time.monotonic() - started) * 1000
            code = _classify_error(e)
            logger.debug("%s %s failed: %s", method, url, e)
            result = Response(
                status=0,
                url=str(request.url),
                method=method,
                timings=Timings(duration=duration_ms),
                error=str(e) or type(e).__name__,
                error_code=code,
            )
            self._emit(result, sent, 0, tags)
            return result

        duration_ms = (time.monotonic() - started) * 1000
        result = Response(
            status=response.status_code,
            body=response.content,
            headers=dict(response.headers),
            url=str(response.url),
            method=method,
            timings=Timings(duration=duration_ms),
        )
        self._emit(result, sent, _response_size(response), tags)
        return result

    def _emit(
        self,
        result: Response,
        sent: int,
        received: int,
        extra: Optional[Mapping[str, str]],
    ) -> None:
        expected = result.ok
        tags = self._tags().merge({
            "method": result.method,
            "url": result.url,
            "name": result.url,
            "status": str(result.status),
            "expected_response": "true" if expected else "false",
        })
        if result.error_code:
            tags = tags.merge({"error_code": str(result.error_code)})
        tags = tags.merge(extra)
        now = time.time()
        push = self.registry.push
        push(HTTP_REQS, 1, tags, now)
        push(HTTP_REQ_DURATION, result.timings.duration, tags, now)
        push(HTTP_REQ_FAILED, 0 if expected else 1, tags, now)
        push(DATA_SENT, sent, tags, now)
        push(DATA_RECEIVED, received, tags, now)

    async def get(self, url: str, **kwargs: Any) -> Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> Response:
        return await self.request("DELETE", url, **kwargs)

    async def head(self, url: str, **kwargs: Any) -> Response:
        return await self.request("HEAD", url, **kwargs)

    async def options(self, url: str, **kwargs: Any) -> Response:
        return await self.request("OPTIONS", url, **kwargs)

    async def batch(self, requests: Iterable[BatchRequest]) -> list[Response]:
        """
        Send several requests concurrently.

        At most ``batch`` requests are in flight overall and at most
        ``batchPerHost`` per host (0 means unlimited).

        Args:
            requests: ``(method, url)``, ``(method, url, kwargs)`` tuples or
                ``{"method": ..., "url": ..., **kwargs}`` mappings

        Returns:
            Responses in request order
        """
        overall = asyncio.Semaphore(self.options.batch) if self.options.batch > 0 else None
        per_host: dict[str, asyncio.Semaphore] = {}

        async def send(spec: BatchRequest) -> Response:
            method, url, kwargs = _normalize_batch_request(spec)
            host = httpx.URL(url).host
            async with AsyncExitStack() as stack:
                if overall is not None:
                    await stack.enter_async_context(overall)
                if self.options.batch_per_host > 0:
                    limit = per_host.setdefault(
                        host, asyncio.Semaphore(self.options.batch_per_host)
                    )
                    await stack.enter_async_context(limit)
                return await self.request(method, url, **kwargs)

        return list(await asyncio.gather(*(send(spec) for spec in requests)))

    async def close(self) -> None:
        await self._client.aclose()


def _normalize_batch_request(spec: BatchRequest) -> tuple[str, str, dict[str, Any]]:
    if isinstance(spec, Mapping):
        kwargs = dict(spec)
        try:
            method = kwargs.pop("method", "GET")
            url = kwargs.pop("url")
        except KeyError:
            raise ValueError(f"batch request without url: {spec!r}") from None
        return method, url, kwargs
    if isinstance(spec, (tuple, list)) and len(spec) in (2, 3):
        method, url = spec[0], spec[1]
        kwargs = dict(spec[2]) if len(spec) == 3 else {}
        return method, url, kwargs
    raise ValueError(f"invalid batch request: {spec!r}")
