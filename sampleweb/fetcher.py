"""
HTTP fetcher built on httpx.

A Fetcher owns one ``httpx.AsyncClient``. Requests run on the asyncio event
loop and finish either with a Response or a TransportError. Results can be
consumed through a completion callback (``send`` / ``FetchTask``) or by
awaiting ``fetch``.
"""
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set
from urllib.parse import urlparse

import httpx
import structlog

from sampleweb.codec import JsonCodec, default_codec
from sampleweb.errors import ResponseTooLarge, TransportError

logger = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = 'SampleWeb/1.0'
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_REDIRECTS = 5
DEFAULT_MAX_RESPONSE_SIZE = 10 * 1024 * 1024  # 10MB

METHODS = frozenset({'GET', 'HEAD', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'})


@dataclass(frozen=True)
class Request:
    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None

    def __post_init__(self):
        method = self.method.upper()
        if method not in METHODS:
            raise ValueError(f"Unsupported HTTP method: {self.method}")

        parsed = urlparse(self.url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"Not an absolute http(s) URL: {self.url}")

        object.__setattr__(self, 'method', method)
        object.__setattr__(self, 'headers', MappingProxyType(dict(self.headers or {})))
        if self.body is not None:
            object.__setattr__(self, 'body', bytes(self.body))

    @classmethod
    def get(cls, url: str, headers: Optional[Mapping[str, str]] = None) -> "Request":
        return cls('GET', url, headers or {})


@dataclass(frozen=True)
class Response:
    status: int
    headers: httpx.Headers
    body: bytes = b''
    url: str = ''
    elapsed: float = 0.0

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup, None when the header is absent."""
        return self.headers.get(name)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> Optional[str]:
        return self.header('content-type')

    @property
    def date(self) -> Optional[str]:
        return self.header('date')

    @property
    def encoding(self) -> str:
        content_type = (self.content_type or '').lower()
        if 'charset=' in content_type:
            charset = content_type.split('charset=')[1].split(';')[0].strip(' "\'')
            if charset:
                return charset
        return 'utf-8'

    @property
    def text(self) -> str:
        if not self.body:
            return ""
        try:
            return self.body.decode(self.encoding)
        except (LookupError, UnicodeDecodeError):
            return self.body.decode('utf-8', errors='replace')

    def json(self, shape: Any = None, codec: Optional[JsonCodec] = None) -> Any:
        """Decode the body as JSON. Raises DecodingError like JsonCodec.decode."""
        return (codec or default_codec).decode(self.body, shape)


@dataclass(frozen=True)
class FetchResult:
    request: Request
    response: Optional[Response] = None
    error: Optional[TransportError] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def unwrap(self) -> Response:
        if self.error is not None:
            raise self.error
        return self.response


CompletionHandler = Callable[[FetchResult], Any]


class FetchState(Enum):
    idle = "idle"
    in_flight = "in_flight"
    completed = "completed"
    failed = "failed"


class FetchTask:
    """A single request. Nothing is sent until ``resume()`` is called."""

    def __init__(self, fetcher: "Fetcher", request: Request, on_complete: Optional[CompletionHandler] = None):
        self.fetcher = fetcher
        self.request = request
        self.on_complete = on_complete
        self.state = FetchState.idle
        self.result: Optional[FetchResult] = None
        self._future: Optional[asyncio.Future] = None

    def resume(self) -> asyncio.Future:
        """Start the request on the running event loop and return right away.

        Calling it again returns the same future; the request is only sent once.
        """
        if self._future is not None:
            return self._future

        self._future = self.fetcher._schedule(self._run)
        self.state = FetchState.in_flight
        return self._future

    async def _run(self) -> FetchResult:
        result = await self.fetcher._perform(self.request)
        self.result = result
        self.state = FetchState.completed if result.success else FetchState.failed

        if self.on_complete is not None:
            try:
                self.on_complete(result)
            except Exception:
                logger.error("completion_callback_error",
                             method=self.request.method,
                             url=self.request.url,
                             exc_info=True)
        return result

    def __await__(self):
        return self.resume().__await__()

    def __repr__(self) -> str:
        return f"<FetchTask {self.request.method} {self.request.url} state={self.state.value}>"


class Fetcher:
    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_TIMEOUT,
        follow_redirects: bool = True,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        max_response_size: Optional[int] = DEFAULT_MAX_RESPONSE_SIZE,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the fetcher and its HTTP client.

        Args:
            user_agent: User-Agent sent with every request.
            timeout: Seconds allowed for connect, read, write and pool waits.
            follow_redirects: Follow 3xx responses.
            max_redirects: Redirect hops allowed before failing.
            max_response_size: Largest body in bytes; None disables the check.
            headers: Extra default headers, overridden by per-request headers.
            transport: Custom httpx transport, e.g. ``httpx.MockTransport``.
        """
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_response_size = max_response_size

        default_headers = {
            'User-Agent': user_agent,
            'Accept': 'application/json, text/plain;q=0.9, */*;q=0.8',
        }
        if headers:
            default_headers.update(headers)

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=follow_redirects,
            max_redirects=max_redirects,
            headers=default_headers,
            transport=transport,
        )
        self._pending: Set[asyncio.Future] = set()

    @classmethod
    def from_config(cls, fetcher_config: Dict[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None) -> "Fetcher":
        """Build a fetcher from the ``fetcher`` section of the configuration."""
        return cls(
            user_agent=fetcher_config.get('user_agent', DEFAULT_USER_AGENT),
            timeout=float(fetcher_config.get('timeout', DEFAULT_TIMEOUT)),
            follow_redirects=fetcher_config.get('follow_redirects', True),
            max_redirects=int(fetcher_config.get('max_redirects', DEFAULT_MAX_REDIRECTS)),
            max_response_size=fetcher_config.get('max_response_size', DEFAULT_MAX_RESPONSE_SIZE),
            headers=fetcher_config.get('headers'),
            transport=transport,
        )

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    def task(self, request: Request, on_complete: Optional[CompletionHandler] = None) -> FetchTask:
        """Create an idle task for ``request``; call ``resume()`` to send it."""
        return FetchTask(self, request, on_complete)

    def send(self, request: Request, on_complete: CompletionHandler) -> FetchTask:
        """Send ``request`` in the background; ``on_complete`` fires exactly once."""
        task = self.task(request, on_complete)
        task.resume()
        return task

    async def fetch(self, request: Request) -> Response:
        """Send ``request`` and return its Response, raising TransportError on failure."""
        result = await self._perform(request)
        return result.unwrap()

    async def get(self, url: str, headers: Optional[Mapping[str, str]] = None) -> Response:
        return await self.fetch(Request.get(url, headers))

    async def fetch_many(self, requests: Iterable[Request]) -> List[FetchResult]:
        """Send requests concurrently. Results come back in request order."""
        return list(await asyncio.gather(*(self._perform(request) for request in requests)))

    async def aclose(self):
        """Wait for in-flight tasks, then close the HTTP client."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self._client.aclose()

    async def __aenter__(self) -> "Fetcher":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    def _schedule(self, coro_factory: Callable[[], Any]) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_task(coro_factory())
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)
        return future

    async def _perform(self, request: Request) -> FetchResult:
        """Run one request. Transport failures are returned, never raised."""
        start_time = time.monotonic()
        logger.info("fetch_started", method=request.method, url=request.url)

        try:
            response = await self._send(request, start_time)
        except TransportError as e:
            logger.warning("fetch_failed",
                           method=request.method,
                           url=request.url,
                           error=str(e),
                           fetch_time=time.monotonic() - start_time)
            return FetchResult(request=request, error=e)

        logger.info("fetch_completed",
                    method=request.method,
                    url=request.url,
                    status=response.status,
                    size=len(response.body),
                    fetch_time=response.elapsed)
        return FetchResult(request=request, response=response)

    async def _send(self, request: Request, start_time: float) -> Response:
        try:
            async with self._client.stream(
                request.method,
                request.url,
                headers=dict(request.headers),
                content=request.body,
            ) as response:
                content_length = response.headers.get('content-length')
                if self._too_large(content_length):
                    raise ResponseTooLarge(
                        request,
                        ValueError(content_length),
                        reason=f"Content too large: {content_length} bytes > {self.max_response_size} bytes",
                    )

                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if self._too_large(len(body)):
                        raise ResponseTooLarge(
                            request,
                            ValueError(len(body)),
                            reason=f"Body exceeded {self.max_response_size} bytes",
                        )

                return Response(
                    status=response.status_code,
                    headers=response.headers,
                    body=bytes(body),
                    url=str(response.url),
                    elapsed=time.monotonic() - start_time,
                )

        except TransportError:
            raise

        except httpx.TimeoutException as e:
            raise TransportError(request, e, reason=f"Timeout after {self.timeout}s: {e}") from e

        except httpx.ConnectError as e:
            raise TransportError(request, e, reason=f"Connection error: {e}") from e

        except httpx.HTTPError as e:
            raise TransportError(request, e) from e

        except Exception as e:
            logger.error("fetch_unexpected_error", method=request.method, url=request.url, exc_info=True)
            raise TransportError(request, e, reason=f"Unexpected error: {e}") from e

    def _too_large(self, size) -> bool:
        if not self.max_response_size or size is None:
            return False
        try:
            return int(size) > self.max_response_size
        except ValueError:
            return False


def create_fetcher(fetcher_config: Optional[Dict[str, Any]] = None, **kwargs) -> Fetcher:
    """Create a Fetcher from a config section; keyword arguments pass through."""
    return Fetcher.from_config(fetcher_config or {}, **kwargs)
