import pytest

from post_generator.nodes.document_builder import (
    UnknownPageShape,
    build_document,
    strip_page_html,
)


def test_raw_scrape_shape():
    page = {
        "title": "Lighthouse goes dark",
        "source": "https://news.example/lighthouse",
        "description": "A coastal mystery",
        "content": (
            "<html><style>p { color: red }</style><script>track()</script>"
            "<p>Hello   <b>world</b></p></html>"
        ),
        "images": ["https://news.example/logo.svg", "https://news.example/pic.jpg?name=large"],
        "youtube": {"subtitles": "the keeper speaks"},
    }
    doc = build_document(page)
    assert doc.title == "Lighthouse goes dark"
    assert doc.source_url == "https://news.example/lighthouse"
    assert doc.text == (
        "https://news.example/lighthouse\n"
        "Lighthouse goes dark\n"
        "A coastal mystery\n"
        "the keeper speaks\n\n"
        "Page Content:\nHello world"
    )
    assert doc.primary_image == "https://news.example/pic.jpg?name=large"


def test_open_graph_shape_with_json_ld():
    page = {
        "name": "fallback-name",
        "ogResult": {
            "ogUrl": "https://blog.example/post",
            "ogDescription": "desc",
            "ogImage": [{"url": "https://blog.example/cover.jpg"}],
            "jsonLD": [{"@type": "WebPage"}, {"articleBody": "Fish & chips"}],
        },
        "ogHTML": "",
    }
    doc = build_document(page)
    assert doc.title == "fallback-name"
    assert '<blockquote cite="https://blog.example/post">JSON-LD:\nFish &amp; chips</blockquote>' in doc.text
    assert "Page Content" not in doc.text
    assert doc.primary_image == "https://blog.example/cover.jpg"


def test_extra_images_join_the_ranking():
    page = {"title": "t", "content": "body", "images": ["https://x/a_normal.jpg"]}
    doc = build_document(page, extra_images=["https://x/b?name=orig"])
    assert [c.url for c in doc.primary_image_candidates] == ["https://x/b?name=orig", "https://x/a_normal.jpg"]


def test_missing_title_defaults_to_untitled():
    assert build_document({"content": "body"}).title == "Untitled"


def test_unknown_shape_is_rejected():
    with pytest.raises(UnknownPageShape):
        build_document({"headline": "nope"})
    with pytest.raises(UnknownPageShape):
        build_document(["not", "a", "dict"])


def test_strip_page_html():
    assert strip_page_html("<SCRIPT type='x'>a\nb</SCRIPT><div>one</div>\n\n<div>two</div>") == "one two"
    assert strip_page_html("") == ""


def test_page_text_decodes_entities_and_drops_comments():
    doc = build_document({"title": "T", "content": "<p>Fish &amp; chips &mdash; 5 &lt; 6</p><!-- a > b -->x"})
    assert doc.text == "T\n\nPage Content:\nFish & chips \u2014 5 < 6 x"


def test_strip_page_html_drops_noscript_and_keeps_nested_text():
    markup = "<body><noscript>enable js</noscript><article><h1>Title</h1><p>Body <em>text</em></p></article></body>"
    assert strip_page_html(markup) == "Title Body text"
