"""Tests for loupe.pages: templates, escaping, and diagram markup."""

from datetime import datetime
from unittest.mock import patch

import pytest

from loupe._types import AssetMissing
from loupe.pages import (
    diagram_markup,
    escape_html,
    fill_template,
    load_template,
    read_asset,
    render_diagram_page,
    render_gallery_page,
)


class TestEscaping:
    def test_escapes_all_specials(self):
        assert escape_html("<a href=\"x\">'&'</a>") == (
            "&lt;a href=&quot;x&quot;&gt;&#x27;&amp;&#x27;&lt;/a&gt;"
        )

    def test_none_and_numbers(self):
        assert escape_html(None) == ""
        assert escape_html(3737) == "3737"


class TestFillTemplate:
    def test_data_is_escaped(self):
        assert fill_template("<p>{{X}}</p>", data={"X": "<b>"}) == "<p>&lt;b&gt;</p>"

    def test_raw_is_verbatim(self):
        assert fill_template("{{C}}", raw={"C": "<svg/>"}) == "<svg/>"

    def test_placeholder_inside_raw_untouched(self):
        out = fill_template("{{C}} {{ID}}", data={"ID": "x"}, raw={"C": "{{ID}}"})
        assert out == "{{ID}} x"

    def test_repeated_placeholder(self):
        assert fill_template("{{A}}-{{A}}", data={"A": 1}) == "1-1"


class TestAssets:
    def test_read_asset(self):
        assert b"<svg" in read_asset("favicon.svg")

    def test_missing_asset(self):
        with pytest.raises(AssetMissing):
            read_asset("nope.css")

    def test_missing_asset_is_file_not_found(self):
        with pytest.raises(FileNotFoundError):
            read_asset("nope.css")

    def test_template_cached(self, tmp_path):
        first = load_template("template.html")
        with patch("loupe.pages.STATIC_DIR", tmp_path):
            assert load_template("template.html") == first


class TestDiagramPage:
    def test_placeholders_filled(self):
        page = render_diagram_page(
            "<svg id='d'/>",
            "arch",
            3737,
            background="#fff",
            timestamp=datetime(2024, 1, 2, 13, 14, 15),
        )
        assert "{{" not in page
        assert "<svg id='d'/>" in page
        assert 'data-diagram-id="arch"' in page
        assert 'data-port="3737"' in page
        assert 'data-live-enabled="true"' in page
        assert "background: #fff" in page
        assert "13:14:15" in page
        assert "<title>arch - Loupe (Live)</title>" in page
        assert 'href="/style.css"' in page
        assert 'src="/script.js"' in page

    def test_static_page(self):
        page = render_diagram_page("<svg/>", "arch", 3737, live=False)
        assert 'data-live-enabled="false"' in page
        assert "<title>arch - Loupe</title>" in page

    def test_background_escaped(self):
        page = render_diagram_page("<svg/>", "arch", None, background='red"><script>')
        assert "red&quot;&gt;&lt;script&gt;" in page
        assert 'data-port=""' in page

    def test_gallery_page(self):
        page = render_gallery_page(3740)
        assert "{{" not in page
        assert "Diagram Gallery - Loupe" in page
        assert 'src="/gallery.js"' in page


class TestDiagramMarkup:
    def test_svg_inlined(self, tmp_path):
        path = tmp_path / "diagram.svg"
        path.write_text("<svg><g/></svg>")
        assert diagram_markup(path) == "<svg><g/></svg>"

    def test_png_data_uri(self, tmp_path):
        path = tmp_path / "diagram.png"
        path.write_bytes(b"\x89PNG")
        assert diagram_markup(path) == '<img src="data:image/png;base64,iVBORw==" alt="Diagram">'

    def test_pdf_notice(self, tmp_path):
        path = tmp_path / "diagram.pdf"
        path.write_bytes(b"%PDF")
        assert "PDF" in diagram_markup(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            diagram_markup(tmp_path / "gone.svg")
