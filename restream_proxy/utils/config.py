import json
import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Tuple
from urllib.parse import urlsplit

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Chrome UA: origin CDNs answer 403/451 to anything that doesn't look like a browser
DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"

DEFAULT_PRESETS = {
    "abs-cbn": "https://cdn-uw2-prod.tsv2.amagi.tv/linear/amg01006-abs-cbn-abscbn-gma-x7-dash-abscbnono/7c693236-e0c1-40a3-8bd0-bb25e43f5bfc/index.mpd",
}

# Names already taken by fixed routes
RESERVED_PRESET_NAMES = frozenset({"playlist", "segment", "favicon.ico"})


@dataclass(frozen=True)
class Settings:
    """Read-only runtime configuration, built once at startup."""
    host: str = "0.0.0.0"
    port: int = 7860
    upstream_timeout: float = 15.0
    user_agent: str = DEFAULT_USER_AGENT
    chunk_size: int = 8192
    proxies: Tuple[str, ...] = ()
    verify_ssl: bool = True
    nested_playlists: bool = False
    presets: Mapping[str, str] = field(default_factory=lambda: MappingProxyType(dict(DEFAULT_PRESETS)))


def parse_proxies(value: str) -> tuple:
    """Splits a comma separated proxy list (GLOBAL_PROXY)."""
    value = (value or "").strip()
    if value:
        return tuple(p.strip() for p in value.split(',') if p.strip())
    return ()


def _parse_number(environ, name, default, cast):
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        logger.warning(f"⚠️ Invalid value for {name}: {raw!r}, using {default}")
        return default
    if value <= 0:
        logger.warning(f"⚠️ {name} must be positive, using {default}")
        return default
    return value


def _parse_bool(environ, name, default):
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    raw = raw.strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    logger.warning(f"⚠️ Invalid boolean for {name}: {raw!r}, using {default}")
    return default


def _is_absolute_http_url(url) -> bool:
    if not isinstance(url, str):
        return False
    try:
        parsed = urlsplit(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def clean_presets(raw: Mapping) -> dict:
    """Drops preset entries that can't be served."""
    presets = {}
    for name, url in raw.items():
        name = str(name).strip().strip('/')
        if not name or '/' in name:
            logger.warning(f"⚠️ Preset name {name!r} is not a single path segment, skipped")
            continue
        if name in RESERVED_PRESET_NAMES:
            logger.warning(f"⚠️ Preset name {name!r} collides with a built-in route, skipped")
            continue
        if not _is_absolute_http_url(url):
            logger.warning(f"⚠️ Preset {name!r} has no absolute http(s) URL, skipped")
            continue
        presets[name] = url
    return presets


def _load_presets(environ) -> dict:
    raw_presets = None
    presets_file = (environ.get("PRESETS_FILE") or "").strip()
    if presets_file:
        try:
            with open(presets_file, 'r', encoding='utf-8') as f:
                raw_presets = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"❌ Unable to read presets file {presets_file}: {e}")

    presets_json = (environ.get("PRESETS") or "").strip()
    if raw_presets is None and presets_json:
        try:
            raw_presets = json.loads(presets_json)
        except ValueError as e:
            logger.error(f"❌ PRESETS is not valid JSON: {e}")

    if raw_presets is None:
        return dict(DEFAULT_PRESETS)
    if not isinstance(raw_presets, dict):
        logger.error("❌ Presets must be a JSON object of name -> URL, using built-in table")
        return dict(DEFAULT_PRESETS)
    return clean_presets(raw_presets)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Builds Settings from the environment (a .env file is loaded first)."""
    if environ is None:
        load_dotenv()
        environ = os.environ

    defaults = Settings()
    proxies = parse_proxies(environ.get("GLOBAL_PROXY", ""))
    if proxies:
        logger.info(f"🌍 Loaded {len(proxies)} outbound proxies.")

    return Settings(
        host=(environ.get("HOST") or defaults.host).strip(),
        port=_parse_number(environ, "PORT", defaults.port, int),
        upstream_timeout=_parse_number(environ, "UPSTREAM_TIMEOUT", defaults.upstream_timeout, float),
        user_agent=(environ.get("USER_AGENT") or defaults.user_agent).strip(),
        chunk_size=_parse_number(environ, "CHUNK_SIZE", defaults.chunk_size, int),
        proxies=proxies,
        verify_ssl=_parse_bool(environ, "VERIFY_SSL", defaults.verify_ssl),
        nested_playlists=_parse_bool(environ, "NESTED_PLAYLISTS", defaults.nested_playlists),
        presets=MappingProxyType(_load_presets(environ)),
    )
