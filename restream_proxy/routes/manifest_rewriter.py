import logging
import re
import urllib.parse
from typing import NamedTuple, Optional
from urllib.parse import urljoin, urlsplit
from xml.sax.saxutils import escape, unescape

logger = logging.getLogger(__name__)

HLS = "hls"
DASH = "dash"

HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"
DASH_CONTENT_TYPE = "application/dash+xml"

SEGMENT_PATH = "/segment"
PLAYLIST_PATH = "/playlist"

NESTED_PLAYLIST_EXTENSIONS = ('.m3u8', '.m3u', '.mpd')

_DASH_ATTRIBUTE_RE = re.compile(r'\b(media|initialization)="([^"]+)"')
_XML_QUOTE_ENTITIES = {'&quot;': '"', '&apos;': "'"}


class RewriteFallback(Exception):
    """A reference could not be resolved; the caller keeps the original text."""


class RewrittenManifest(NamedTuple):
    body: str
    content_type: str
    format: str


def classify_manifest(url: str) -> str:
    """`.mpd` paths are DASH, everything else is treated as HLS."""
    path = urlsplit(url).path
    return DASH if path.lower().endswith('.mpd') else HLS


def manifest_base(url: str) -> str:
    """Origin plus the path up to (and including) its last '/'."""
    parsed = urlsplit(url)
    path = parsed.path or '/'
    return f"{parsed.scheme}://{parsed.netloc}{path[:path.rfind('/') + 1]}"


def resolve_reference(reference: str, base: str) -> str:
    return urljoin(base, reference)


class ManifestRewriter:
    """Rewrites HLS/DASH references so clients fetch them through the proxy."""

    def __init__(self, proxy_base: str = "", nested_playlists: bool = False):
        self.proxy_base = proxy_base.rstrip('/')
        self.nested_playlists = nested_playlists

    def proxy_url(self, absolute_url: str) -> str:
        path = SEGMENT_PATH
        if self.nested_playlists:
            target_path = urlsplit(absolute_url).path.lower()
            if target_path.endswith(NESTED_PLAYLIST_EXTENSIONS):
                path = PLAYLIST_PATH
        encoded_url = urllib.parse.quote(absolute_url, safe='')
        return f"{self.proxy_base}{path}?url={encoded_url}"

    def _resolve(self, reference: str, base: str) -> str:
        try:
            return resolve_reference(reference, base)
        except ValueError as e:
            logger.debug(f"Resolution failed for {reference!r} ({e}), falling back to concatenation")

        candidate = base + reference
        try:
            urlsplit(candidate)
        except ValueError as e:
            raise RewriteFallback(f"Unresolvable reference {reference!r}") from e
        return candidate

    def _rewrite_reference(self, reference: str, base: str) -> Optional[str]:
        try:
            return self.proxy_url(self._resolve(reference, base))
        except RewriteFallback as e:
            logger.debug(f"{e}, left untouched")
            return None

    def rewrite_hls(self, content: str, source_url: str) -> str:
        base = manifest_base(source_url)
        rewritten_lines = []

        for line in content.split('\n'):
            reference = line.strip()

            # Tags, comments and blank lines stay byte-identical
            if not reference or reference.startswith('#'):
                rewritten_lines.append(line)
                continue

            proxied = self._rewrite_reference(reference, base)
            if proxied is None:
                rewritten_lines.append(line)
                continue

            if line.endswith('\r'):
                proxied += '\r'
            rewritten_lines.append(proxied)

        return '\n'.join(rewritten_lines)

    def rewrite_dash(self, content: str, source_url: str) -> str:
        base = manifest_base(source_url)

        def replace(match):
            attribute, value = match.group(1), match.group(2)
            proxied = self._rewrite_reference(unescape(value, _XML_QUOTE_ENTITIES), base)
            if proxied is None:
                return match.group(0)
            return f'{attribute}="{escape(proxied)}"'

        return _DASH_ATTRIBUTE_RE.sub(replace, content)

    def rewrite(self, content: str, source_url: str, manifest_format: Optional[str] = None) -> RewrittenManifest:
        """
        Rewrites a manifest fetched from `source_url`.

        The format comes from `manifest_format` when given, otherwise from the
        URL extension. Relative references resolve against `source_url`, which
        should be the final URL after redirects.
        """
        manifest_format = manifest_format or classify_manifest(source_url)
        if manifest_format == DASH:
            return RewrittenManifest(self.rewrite_dash(content, source_url), DASH_CONTENT_TYPE, DASH)
        return RewrittenManifest(self.rewrite_hls(content, source_url), HLS_CONTENT_TYPE, HLS)
