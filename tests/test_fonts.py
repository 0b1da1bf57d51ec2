import os

import pytest

from reel_server.errors import FetchError
from reel_server.fonts import FontCache
from reel_server.models import OverlaySpec

from .conftest import FakeFetcher

DEFAULT = "/usr/share/fonts/ttf-dejavu/DejaVuSans-Bold.ttf"


@pytest.fixture
def cache_dir(tmp_path):
    d = tmp_path / "fonts"
    d.mkdir()
    return d


class TestFontCache:
    def test_font_url_downloaded_once(self, cache_dir):
        fetcher = FakeFetcher(payload=b"ttf-bytes")
        fonts = FontCache(str(cache_dir), DEFAULT, fetcher)
        overlay = OverlaySpec(text="Hi", font_url="https://cdn.example.com/brand/Montserrat-Bold.ttf")

        first = fonts.resolve(overlay)
        second = fonts.resolve(overlay)

        assert first == second == str(cache_dir / "Montserrat-Bold.ttf")
        assert len(fetcher.calls) == 1
        assert (cache_dir / "Montserrat-Bold.ttf").read_bytes() == b"ttf-bytes"

    def test_download_failure_falls_back_to_default(self, cache_dir):
        url = "https://cdn.example.com/missing.ttf"
        fetcher = FakeFetcher(failures={url: FetchError(url, status=404)})
        fonts = FontCache(str(cache_dir), DEFAULT, fetcher)

        assert fonts.resolve(OverlaySpec(text="Hi", font_url=url)) == DEFAULT
        assert os.listdir(cache_dir) == []

    def test_font_url_wins_over_name(self, cache_dir):
        (cache_dir / "Roboto-Regular.ttf").write_bytes(b"x")
        fonts = FontCache(str(cache_dir), DEFAULT, FakeFetcher())

        path = fonts.resolve(OverlaySpec(font_url="https://cdn.example.com/Brand.otf", font_name="roboto"))

        assert path == str(cache_dir / "Brand.otf")

    def test_font_name_matches_case_insensitively(self, cache_dir):
        (cache_dir / "Roboto-Regular.ttf").write_bytes(b"x")
        fonts = FontCache(str(cache_dir), DEFAULT, FakeFetcher())

        assert fonts.resolve(OverlaySpec(font_name="ROBOTO")) == str(cache_dir / "Roboto-Regular.ttf")

    def test_unknown_font_name_uses_default(self, cache_dir):
        fonts = FontCache(str(cache_dir), DEFAULT, FakeFetcher())
        assert fonts.resolve(OverlaySpec(font_name="Comic")) == DEFAULT

    def test_no_font_fields_uses_default(self, cache_dir):
        fonts = FontCache(str(cache_dir), DEFAULT, FakeFetcher())
        assert fonts.resolve(OverlaySpec(text="Hi")) == DEFAULT

    def test_url_without_file_name_uses_default(self, cache_dir):
        fetcher = FakeFetcher()
        fonts = FontCache(str(cache_dir), DEFAULT, fetcher)

        assert fonts.resolve(OverlaySpec(font_url="https://cdn.example.com/")) == DEFAULT
        assert fetcher.calls == []

    def test_list_reports_sizes_and_hides_partial_downloads(self, cache_dir):
        (cache_dir / "A.ttf").write_bytes(b"x" * 2048)
        (cache_dir / "B.ttf.1234.part").write_bytes(b"x")
        fonts = FontCache(str(cache_dir), DEFAULT, FakeFetcher())

        assert fonts.list() == [{"name": "A.ttf", "path": str(cache_dir / "A.ttf"), "size_kb": 2}]
