import pytest

from errors import FeedFetchError
from fetcher import FeedFetcher

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example News</title>
    <link>https://example.com/</link>
    <item>
      <title>  First post  </title>
      <link>https://example.com/posts/1</link>
      <description>&lt;p&gt;Hello &lt;a href="/about"&gt;world&lt;/a&gt;&lt;/p&gt;&lt;script&gt;alert(1)&lt;/script&gt;</description>
      <pubDate>Mon, 17 Nov 2025 08:30:00 +0000</pubDate>
    </item>
    <item>
      <title>Undated</title>
      <link>https://example.com/posts/2</link>
    </item>
  </channel>
</rss>
"""

ATOM = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Example</title>
  <entry>
    <title>Atom entry</title>
    <link href="https://example.org/entry"/>
    <id>urn:uuid:1</id>
    <updated>2025-11-18T10:00:00Z</updated>
    <content type="html">&lt;p&gt;Body text&lt;/p&gt;</content>
  </entry>
</feed>
"""


@pytest.mark.asyncio
async def test_parse_rss_feed_normalizes_entries():
    fetcher = FeedFetcher()
    try:
        parsed = await fetcher._parse_feed("https://example.com/rss.xml", RSS)
    finally:
        await fetcher.close()

    assert parsed['title'] == "Example News"
    first, second = parsed['entries']
    assert first['link'] == "https://example.com/posts/1"
    assert first['title'] == "First post"
    assert first['isoDate'] == "2025-11-17T08:30:00Z"
    assert first['pubDate'] == "Mon, 17 Nov 2025 08:30:00 +0000"
    assert "Hello" in first['description']
    assert "alert" not in first['description']

    assert second['isoDate'] is None
    assert second['pubDate'] is None
    assert second['description'] == ""


@pytest.mark.asyncio
async def test_parse_atom_feed_uses_updated_and_content():
    fetcher = FeedFetcher()
    try:
        parsed = await fetcher._parse_feed("https://example.org/atom.xml", ATOM)
    finally:
        await fetcher.close()

    entry = parsed['entries'][0]
    assert entry['link'] == "https://example.org/entry"
    assert entry['isoDate'] == "2025-11-18T10:00:00Z"
    assert entry['pubDate'] == "2025-11-18T10:00:00Z"
    assert entry['description'] == "Body text"


@pytest.mark.asyncio
async def test_non_feed_content_raises_fetch_error():
    fetcher = FeedFetcher()
    try:
        with pytest.raises(FeedFetchError):
            await fetcher._parse_feed("https://example.com/", b"\x00\x01 definitely not xml <<<")
    finally:
        await fetcher.close()


def test_normalize_entry_defaults():
    fetcher = FeedFetcher()
    normalized = fetcher.normalize_entry({'link': "  https://example.com/x  "})

    assert normalized == {
        'link': "https://example.com/x",
        'title': "",
        'description': "",
        'pubDate': None,
        'isoDate': None,
    }
