import asyncio
import logging
import random
from contextlib import asynccontextmanager
from typing import NamedTuple
from urllib.parse import urlsplit

from aiohttp import ClientError, ClientSession, ClientTimeout, TCPConnector
from aiohttp_proxy import ProxyConnector

logger = logging.getLogger(__name__)

# Client request headers passed through to the origin for segment requests
FORWARDED_SEGMENT_HEADERS = ('Range', 'If-None-Match', 'If-Modified-Since')


class ProxyError(Exception):
    """Base error; `status` is the HTTP status the proxy answers with."""
    status = 500

    def __init__(self, message, status=None):
        super().__init__(message)
        if status is not None:
            self.status = status


class InvalidTarget(ProxyError):
    status = 400


class UpstreamTimeout(ProxyError):
    status = 502


class UpstreamHTTPError(ProxyError):
    def __init__(self, status_code: int, url: str):
        self.status_code = status_code
        self.url = url
        forwarded = status_code if 400 <= status_code < 600 else 500
        super().__init__(f"Upstream error: {status_code}", status=forwarded)


class StreamInterrupted(ProxyError):
    status = 502


def validate_target(url) -> str:
    """Returns the stripped URL or raises InvalidTarget."""
    if not url or not url.strip():
        raise InvalidTarget("Missing 'url' parameter")
    url = url.strip()
    try:
        parsed = urlsplit(url)
        parsed.port  # raises ValueError for a non-numeric or out of range port
    except ValueError as e:
        raise InvalidTarget(f"Invalid 'url' parameter: {e}") from e
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        raise InvalidTarget(f"Invalid 'url' parameter: {url}")
    return url


class FetchedManifest(NamedTuple):
    text: str
    url: str
    status: int
    content_type: str


class UpstreamStream:
    """Open upstream response, consumed chunk by chunk."""

    def __init__(self, response, chunk_size: int):
        self.response = response
        self.chunk_size = chunk_size

    @property
    def status(self) -> int:
        return self.response.status

    @property
    def headers(self):
        return self.response.headers

    @property
    def url(self) -> str:
        return str(self.response.url)

    async def iter_chunks(self):
        try:
            async for chunk in self.response.content.iter_chunked(self.chunk_size):
                yield chunk
        except asyncio.TimeoutError as e:
            raise StreamInterrupted(f"Upstream timed out mid-transfer: {self.url}") from e
        except ClientError as e:
            raise StreamInterrupted(f"Upstream connection lost: {self.url} ({e})") from e


class UpstreamFetcher:
    """Single GET per call against an origin, with browser-like headers."""

    def __init__(self, settings):
        self.settings = settings
        self.session = None

    def _get_random_proxy(self):
        return random.choice(self.settings.proxies) if self.settings.proxies else None

    async def _get_session(self):
        if self.session is None or self.session.closed:
            proxy = self._get_random_proxy()
            if proxy:
                logger.info(f"📡 Using outbound proxy {proxy} for upstream requests.")
                connector = ProxyConnector.from_url(proxy, ssl=self.settings.verify_ssl)
            else:
                connector = TCPConnector(
                    limit=100, limit_per_host=20,
                    keepalive_timeout=60, ssl=self.settings.verify_ssl
                )
            self.session = ClientSession(
                timeout=ClientTimeout(total=self.settings.upstream_timeout),
                connector=connector
            )
        return self.session

    def build_headers(self, url: str, extra_headers=None) -> dict:
        parsed = urlsplit(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        headers = {
            "User-Agent": self.settings.user_agent,
            "Referer": origin,
            "Accept": "*/*",
        }
        if extra_headers:
            headers.update(extra_headers)
        return headers

    async def fetch_text(self, url: str) -> FetchedManifest:
        """Fetches a manifest and returns its text plus the final (post-redirect) URL."""
        url = validate_target(url)
        session = await self._get_session()
        try:
            async with session.get(url, headers=self.build_headers(url)) as resp:
                if not 200 <= resp.status < 300:
                    raise UpstreamHTTPError(resp.status, url)
                text = await resp.text(errors='replace')
                return FetchedManifest(
                    text=text,
                    url=str(resp.url),
                    status=resp.status,
                    content_type=resp.headers.get('Content-Type', '')
                )
        except asyncio.TimeoutError as e:
            raise UpstreamTimeout(f"Upstream timed out after {self.settings.upstream_timeout}s: {url}") from e
        except ClientError as e:
            raise StreamInterrupted(f"Upstream request failed: {url} ({e})") from e

    @asynccontextmanager
    async def open_stream(self, url: str, extra_headers=None):
        """Opens a streaming GET; the upstream response is released on exit."""
        url = validate_target(url)
        session = await self._get_session()
        try:
            resp = await session.get(url, headers=self.build_headers(url, extra_headers))
        except asyncio.TimeoutError as e:
            raise UpstreamTimeout(f"Upstream timed out after {self.settings.upstream_timeout}s: {url}") from e
        except ClientError as e:
            raise StreamInterrupted(f"Upstream request failed: {url} ({e})") from e

        try:
            yield UpstreamStream(resp, self.settings.chunk_size)
        finally:
            resp.release()

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
