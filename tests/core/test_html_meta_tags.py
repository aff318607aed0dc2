from app.core.html_utils import parse_meta_tags


def test_collects_open_graph_and_standard_tags():
    html = """
    <html><head>
      <title>  Plain   title </title>
      <meta property="og:title" content="OG title">
      <meta property="og:description" content="OG description">
      <meta name="description" content="Meta description">
      <meta property="og:image" content="/og.png">
      <meta name="twitter:image" content="/tw.png">
    </head><body></body></html>
    """
    tags = parse_meta_tags(html)
    assert tags.title == "Plain title"
    assert tags.og_title == "OG title"
    assert tags.og_description == "OG description"
    assert tags.meta_description == "Meta description"
    assert tags.og_image == "/og.png"
    assert tags.twitter_image == "/tw.png"


def test_decodes_entities_once():
    html = (
        "<head><title>Tom &amp; Jerry</title>"
        '<meta property="og:title" content="Fish &amp;amp; Chips &#39;24"></head>'
    )
    tags = parse_meta_tags(html)
    assert tags.title == "Tom & Jerry"
    assert tags.og_title == "Fish &amp; Chips '24"


def test_first_occurrence_wins_and_body_is_ignored():
    html = (
        '<head><meta property="og:title" content="First">'
        '<meta property="og:title" content="Second"></head>'
        '<body><meta property="og:description" content="From body"></body>'
    )
    tags = parse_meta_tags(html)
    assert tags.og_title == "First"
    assert tags.og_description is None


def test_empty_and_malformed_documents():
    assert parse_meta_tags("").title is None
    tags = parse_meta_tags('<meta property="og:title" content=""><title></title><p>unclosed')
    assert tags.og_title is None
    assert tags.title is None
