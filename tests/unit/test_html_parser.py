"""Unit tests for HTML parser"""

from knowledge_pipeline.services.html_parser import HtmlParser


def test_parse_with_main_tag():
    """Test content extraction from <main> tag"""
    html = """
    <html><body>
        <nav>Navigation</nav>
        <main>
            <h1>Title</h1>
            <p>Content here.</p>
        </main>
        <footer>Footer</footer>
    </body></html>
    """

    parsed = HtmlParser().parse(html, "upload")

    assert parsed.title == "Title"
    assert "Content here." in parsed.content
    assert "Navigation" not in parsed.content
    assert "Footer" not in parsed.content


def test_headings_become_markdown_sections():
    html = """
    <html><head><title>Meal Plan</title></head><body><article>
        <h1>Meal Plan</h1>
        <p>Eat well.</p>
        <h2>Breakfast</h2>
        <p>Oats with berries.</p>
        <h3>Drinks</h3>
        <p>Green tea.</p>
    </article></body></html>
    """

    parsed = HtmlParser().parse(html, "plan")

    assert parsed.title == "Meal Plan"
    assert parsed.content.startswith("# Meal Plan\n\nEat well.")
    assert "\n\n## Breakfast\n\nOats with berries." in parsed.content
    assert "\n\n### Drinks\n\nGreen tea." in parsed.content


def test_list_items_become_bullets():
    html = "<html><body><main><ul><li>Water</li><li>Sleep</li></ul></main></body></html>"

    parsed = HtmlParser().parse(html, "habits")

    assert "- Water" in parsed.content
    assert "- Sleep" in parsed.content


def test_fallback_strips_navigation():
    """Test fallback extraction removes navigation and scripts"""
    html = """
    <html><body>
        <div class="sidebar">Side links</div>
        <p>Useful paragraph.</p>
        <script>var x = 1;</script>
    </body></html>
    """

    parsed = HtmlParser().parse(html, "notes")

    assert parsed.title == "notes"
    assert parsed.content == "Useful paragraph."


def test_html_entities_are_decoded():
    html = "<html><body><main><p>Salt &amp; pepper</p></main></body></html>"

    parsed = HtmlParser().parse(html, "seasoning")

    assert parsed.content == "Salt & pepper"


def test_empty_html_yields_empty_content():
    parsed = HtmlParser().parse("", "blank")

    assert parsed.content == ""
    assert parsed.title == "blank"


def test_clean_text_normalizes_whitespace():
    cleaned = HtmlParser.clean_text("a   b\n\n\n\nc\n# Head\nd")

    assert cleaned == "a b\n\nc\n\n# Head\n\nd"
