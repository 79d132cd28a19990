import asyncio
from types import MappingProxyType

import pytest
from aiohttp import web

from restream_proxy.app import create_app
from restream_proxy.utils.config import Settings

MEDIA_PLAYLIST = (
    "#EXTM3U\n"
    "#EXT-X-VERSION:3\n"
    "#EXT-X-TARGETDURATION:6\n"
    "#EXT-X-MEDIA-SEQUENCE:100\n"
    "#EXT-X-KEY:METHOD=AES-128,URI=\"key.bin\"\n"
    "\n"
    "#EXTINF:6.0,\n"
    "segment1.ts\n"
    "#EXTINF:6.0,\n"
    "/abs/segment2.ts?token=abc&exp=1\n"
    "#EXTINF:6.0,\n"
    "https://other.example/segment3.ts\n"
)

DASH_MANIFEST = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    '<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="dynamic">\n'
    '  <Period id="1">\n'
    '    <AdaptationSet mimeType="video/mp4">\n'
    '      <SegmentTemplate timescale="90000" media="video/chunk-$Number$.m4s?sig=a&amp;b=1" '
    'initialization="video/init.mp4" startNumber="1"/>\n'
    '      <Representation id="v1" bandwidth="800000"/>\n'
    '    </AdaptationSet>\n'
    '  </Period>\n'
    '</MPD>\n'
)

MASTER_PLAYLIST = (
    "#EXTM3U\n"
    "#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=640x360\n"
    "low/index.m3u8\n"
    "#EXT-X-STREAM-INF:BANDWIDTH=2400000,RESOLUTION=1280x720\n"
    "high/index.m3u8?quality=hd\n"
)

SEGMENT_BYTES = bytes(range(256)) * 64


class FakeOrigin:
    """aiohttp origin server that records every request it receives."""

    def __init__(self):
        self.requests = []
        self.server = None

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))

    def paths(self):
        return [r["path"] for r in self.requests]

    def build_app(self) -> web.Application:
        @web.middleware
        async def record(request, handler):
            self.requests.append({"path": request.path, "headers": dict(request.headers)})
            return await handler(request)

        app = web.Application(middlewares=[record])
        app.router.add_get('/live/index.m3u8', self.media_playlist)
        app.router.add_get('/live/master.m3u8', self.master_playlist)
        app.router.add_get('/redirect/index.m3u8', self.redirect)
        app.router.add_get('/moved/index.m3u8', self.media_playlist)
        app.router.add_get('/dash/manifest.mpd', self.dash_manifest)
        app.router.add_get('/missing.m3u8', self.missing)
        app.router.add_get('/slow.m3u8', self.slow)
        app.router.add_get('/live/segment1.ts', self.segment)
        app.router.add_get('/gzip.ts', self.gzip_segment)
        app.router.add_get('/big.bin', self.big)
        app.router.add_get('/broken.ts', self.broken)
        app.router.add_get('/empty-broken.ts', self.empty_broken)
        app.router.add_get('/not-found.ts', self.missing)
        return app

    async def media_playlist(self, request):
        return web.Response(text=MEDIA_PLAYLIST, content_type='application/vnd.apple.mpegurl')

    async def master_playlist(self, request):
        return web.Response(text=MASTER_PLAYLIST, content_type='application/vnd.apple.mpegurl')

    async def redirect(self, request):
        raise web.HTTPFound('/moved/index.m3u8')

    async def dash_manifest(self, request):
        return web.Response(text=DASH_MANIFEST, content_type='application/dash+xml')

    async def missing(self, request):
        return web.Response(text="nope", status=404)

    async def slow(self, request):
        await asyncio.sleep(2)
        return web.Response(text="#EXTM3U\n")

    async def segment(self, request):
        return web.Response(
            body=SEGMENT_BYTES,
            content_type='video/mp2t',
            headers={
                'X-Origin': 'fake',
                'ETag': '"seg1"',
                'Proxy-Authenticate': 'Basic realm="cdn"',
                'Access-Control-Allow-Origin': 'https://only.example',
            }
        )

    async def gzip_segment(self, request):
        response = web.Response(body=SEGMENT_BYTES, content_type='video/mp2t')
        response.enable_compression(web.ContentCoding.gzip)
        return response

    async def big(self, request):
        response = web.StreamResponse(headers={'Content-Type': 'application/octet-stream'})
        await response.prepare(request)
        for i in range(32):
            await response.write(bytes([i]) * 65536)
        await response.write_eof()
        return response

    async def broken(self, request):
        response = web.StreamResponse(headers={'Content-Type': 'video/mp2t'})
        response.content_length = 100000
        await response.prepare(request)
        await response.write(b'\x47' * 1000)
        await asyncio.sleep(0.2)
        request.transport.close()
        return response

    async def empty_broken(self, request):
        response = web.StreamResponse(headers={'Content-Type': 'video/mp2t'})
        response.content_length = 1000
        await response.prepare(request)
        await asyncio.sleep(0.2)
        request.transport.close()
        return response


@pytest.fixture
async def origin(aiohttp_server):
    fake = FakeOrigin()
    fake.server = await aiohttp_server(fake.build_app())
    return fake


@pytest.fixture
def settings(origin):
    return Settings(
        upstream_timeout=0.5,
        presets=MappingProxyType({"demo": origin.url('/live/index.m3u8')}),
    )


@pytest.fixture
async def client(aiohttp_client, settings):
    return await aiohttp_client(create_app(settings))
