"""
Font resolution for text overlays.

Priority:
  1. overlay.font_url  - download once into the shared cache (per-client branding)
  2. overlay.font_name - case-insensitive partial match against cached files
  3. default font      - DejaVu Sans Bold (covers Latin diacritics)

The cache directory is append-only: a file that exists is never re-downloaded
or rewritten, and nothing is evicted.
"""

import logging
import os
import uuid
from typing import Dict, List, Optional
from urllib.parse import urlparse

from .errors import FetchError
from .models import OverlaySpec

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"


class FontCache:
    def __init__(self, cache_dir: str, default_font: str, fetcher):
        self.cache_dir = cache_dir
        self.default_font = default_font
        self.fetcher = fetcher

    def cached_names(self) -> List[str]:
        try:
            names = os.listdir(self.cache_dir)
        except FileNotFoundError:
            return []
        return [n for n in names if not n.endswith(PARTIAL_SUFFIX)]

    def list(self) -> List[Dict]:
        fonts = []
        for name in self.cached_names():
            path = os.path.join(self.cache_dir, name)
            fonts.append({
                "name": name,
                "path": path,
                "size_kb": round(os.path.getsize(path) / 1024),
            })
        return fonts

    def resolve(self, overlay: OverlaySpec) -> str:
        if overlay.font_url:
            path = self._from_url(str(overlay.font_url))
            if path:
                return path
            return self.default_font

        if overlay.font_name:
            path = self._from_name(overlay.font_name)
            if path:
                return path
            logger.warning("[fonts] Font %r not found in cache, using default", overlay.font_name)

        return self.default_font

    def _from_url(self, url: str) -> Optional[str]:
        name = os.path.basename(urlparse(url).path)
        if not name:
            logger.warning("[fonts] Cannot derive a file name from %s, using default", url)
            return None
        path = os.path.join(self.cache_dir, name)
        if os.path.exists(path):
            logger.info("[fonts] Using cached: %s", path)
            return path

        # two jobs may race on the same font; both write identical bytes and
        # the rename makes the last one win without exposing a partial file
        tmp = f"{path}.{uuid.uuid4().hex}{PARTIAL_SUFFIX}"
        logger.info("[fonts] Downloading: %s from %s", name, url)
        try:
            self.fetcher.fetch(url, tmp)
            os.replace(tmp, path)
        except (FetchError, OSError) as e:
            logger.warning("[fonts] Failed to download font: %s, using default", e)
            try:
                os.remove(tmp)
            except OSError:
                pass
            return None
        logger.info("[fonts] Cached: %s", path)
        return path

    def _from_name(self, font_name: str) -> Optional[str]:
        needle = font_name.lower()
        try:
            for name in self.cached_names():
                if needle in name.lower():
                    path = os.path.join(self.cache_dir, name)
                    logger.info("[fonts] Matched by name %r: %s", font_name, path)
                    return path
        except OSError as e:
            logger.warning("[fonts] Cache lookup failed: %s", e)
        return None
