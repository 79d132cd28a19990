import logging
import os
import sys

from aiohttp import web

from restream_proxy.routes.manifest_rewriter import DASH, HLS, ManifestRewriter, classify_manifest
from restream_proxy.utils.config import Settings, load_settings
from restream_proxy.utils.upstream import (
    FORWARDED_SEGMENT_HEADERS,
    ProxyError,
    StreamInterrupted,
    UpstreamFetcher,
)

# --- Logging ---
logging.basicConfig(
    level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format='%(asctime)s - %(levelname)s - %(name)s - %(message)s'
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

SETTINGS_KEY = web.AppKey("settings", Settings)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, HEAD, OPTIONS',
    'Access-Control-Allow-Headers': 'Range, Content-Type',
}

# Never copied from the upstream segment response
HOP_BY_HOP_HEADERS = frozenset({
    'connection', 'content-encoding', 'transfer-encoding', 'keep-alive',
    'proxy-authenticate', 'proxy-authorization', 'te', 'trailer', 'upgrade',
})


def filter_response_headers(upstream_headers) -> list:
    """Upstream headers minus hop-by-hop ones, as (name, value) pairs."""
    # The client session already decoded the body, so the encoded length is stale
    drop_length = 'content-encoding' in {k.lower() for k in upstream_headers.keys()}
    filtered = []
    for name, value in upstream_headers.items():
        lowered = name.lower()
        if lowered in HOP_BY_HOP_HEADERS:
            continue
        if lowered == 'content-length' and drop_length:
            continue
        if lowered.startswith('access-control-'):
            continue
        filtered.append((name, value))
    return filtered


def _error_response(text: str, status: int) -> web.Response:
    return web.Response(text=text, status=status, headers=CORS_HEADERS)


class StreamProxy:
    """Manifest rewriting proxy and segment relay for HLS/DASH live streams"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.fetcher = UpstreamFetcher(settings)
        self.rewriter = ManifestRewriter(nested_playlists=settings.nested_playlists)

    async def handle_root(self, request):
        """Health/info endpoint listing the configured presets."""
        info = {
            "proxy": "Restream Proxy",
            "version": VERSION,
            "status": "ok",
            "presets": sorted(self.settings.presets.keys()),
            "endpoints": {
                "/playlist": "Manifest proxy (HLS/DASH) - ?url=<URL>",
                "/segment": "Segment relay - ?url=<URL>",
                "/{preset}": "Manifest proxy for a configured preset",
            }
        }
        return web.json_response(info, headers=CORS_HEADERS)

    async def handle_options(self, request):
        """CORS preflight."""
        headers = dict(CORS_HEADERS)
        headers['Access-Control-Max-Age'] = '86400'
        return web.Response(headers=headers)

    async def handle_playlist_request(self, request):
        target_url = request.query.get('url')
        manifest_format = request.query.get('format', '').lower() or None
        if manifest_format not in (None, HLS, DASH):
            return _error_response(f"Unknown manifest format: {manifest_format}", 400)
        return await self._serve_manifest(target_url, manifest_format)

    async def handle_preset_request(self, request):
        name = request.match_info['name']
        target_url = self.settings.presets.get(name)
        if target_url is None:
            return _error_response(f"Unknown channel: {name}", 404)
        logger.info(f"📺 Preset {name} -> {target_url}")
        return await self._serve_manifest(target_url)

    async def handle_segment_request(self, request):
        target_url = request.query.get('url')
        extra_headers = {
            header: request.headers[header]
            for header in FORWARDED_SEGMENT_HEADERS
            if header in request.headers
        }
        try:
            return await self._relay_segment(request, target_url, extra_headers)
        except ProxyError as e:
            logger.warning(f"⚠️ Segment relay failed: {e}")
            return _error_response(str(e), e.status)
        except Exception as e:
            logger.exception(f"❌ Unexpected error relaying segment {target_url}: {e}")
            return _error_response(f"Segment error: {e}", 500)

    async def _serve_manifest(self, target_url, manifest_format=None):
        try:
            manifest = await self.fetcher.fetch_text(target_url)
            manifest_format = manifest_format or classify_manifest(target_url)
            rewritten = self.rewriter.rewrite(manifest.text, manifest.url, manifest_format)
        except ProxyError as e:
            logger.warning(f"⚠️ Manifest fetch failed: {e}")
            return _error_response(str(e), e.status)
        except Exception as e:
            logger.exception(f"❌ Unexpected error serving manifest {target_url}: {e}")
            return _error_response(f"Manifest error: {e}", 500)

        logger.info(f"📄 Rewrote {rewritten.format.upper()} manifest: {manifest.url}")
        headers = dict(CORS_HEADERS)
        headers['Content-Type'] = rewritten.content_type
        headers['Cache-Control'] = 'no-cache'
        return web.Response(text=rewritten.body, headers=headers)

    async def _relay_segment(self, request, target_url, extra_headers):
        """Streams an upstream segment to the client chunk by chunk."""
        async with self.fetcher.open_stream(target_url, extra_headers) as upstream:
            response = web.StreamResponse(status=upstream.status)
            for name, value in filter_response_headers(upstream.headers):
                response.headers.add(name, value)
            response.headers.update(CORS_HEADERS)

            if request.method == 'HEAD':
                await response.prepare(request)
                await response.write_eof()
                return response

            # Nothing is committed until the first body read succeeds, so an
            # early StreamInterrupted still reaches the caller as a 502
            chunks = upstream.iter_chunks()
            try:
                first_chunk = await chunks.__anext__()
            except StopAsyncIteration:
                first_chunk = b''

            try:
                await response.prepare(request)
                if first_chunk:
                    await response.write(first_chunk)
                async for chunk in chunks:
                    await response.write(chunk)
            except StreamInterrupted as e:
                # Status and headers are already out: the only signal left is dropping the connection
                logger.warning(f"⚠️ {e}")
                self._drop_connection(request)
                return response
            except ConnectionResetError as e:
                logger.info(f"ℹ️ Client disconnected from stream: {upstream.url} ({e})")
                return response
            except Exception as e:
                logger.exception(f"❌ Unexpected error mid-stream {upstream.url}: {e}")
                self._drop_connection(request)
                return response

            await response.write_eof()
            return response

    @staticmethod
    def _drop_connection(request):
        transport = request.transport
        if transport is not None:
            transport.close()

    async def cleanup(self):
        await self.fetcher.close()


# --- Startup ---
def create_app(settings: Settings = None):
    """Builds the aiohttp application."""
    settings = settings or load_settings()
    proxy = StreamProxy(settings)

    app = web.Application()

    app.router.add_get('/', proxy.handle_root)
    app.router.add_get('/playlist', proxy.handle_playlist_request)
    app.router.add_get('/segment', proxy.handle_segment_request)

    # Presets last so they never shadow a fixed route
    app.router.add_get('/{name}', proxy.handle_preset_request)

    # CORS
    app.router.add_route('OPTIONS', '/{tail:.*}', proxy.handle_options)

    async def cleanup_handler(app):
        await proxy.cleanup()
    app.on_cleanup.append(cleanup_handler)

    app[SETTINGS_KEY] = settings
    return app


# Module level instance for `python -m restream_proxy.app` and external runners
app = create_app()


def main():
    """Starts the server."""
    settings = app[SETTINGS_KEY]

    # Quiet proactor loop noise on Windows
    if sys.platform == 'win32':
        logging.getLogger('asyncio').setLevel(logging.CRITICAL)

    logger.info(f"🚀 Restream proxy listening on http://{settings.host}:{settings.port}")
    for name in sorted(settings.presets):
        logger.info(f"   • /{name}")

    web.run_app(
        app,
        host=settings.host,
        port=settings.port
    )


if __name__ == '__main__':
    main()
