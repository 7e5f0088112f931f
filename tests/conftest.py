"""Shared fixtures and test utilities for podcast_hotline tests.

This module contains:
- Test constants
- Helper functions for creating feeds, configs and ad inventories
- Mock classes (HTTP responses, a controllable clock)

All test files can import from this module using pytest's conftest.py mechanism.
"""

import json

import requests

from podcast_hotline import config

# Test constants
TEST_BASE_URL = "https://example.com"
TEST_FEED_URL = "https://example.com/feed.xml"
TEST_AUDIO_URL = "https://cdn.example.com/episodes/ep1.mp3"
TEST_AUDIO_URL_2 = "https://cdn.example.com/episodes/ep2.mp3"
TEST_EPISODE_TITLE = "Episode Title"
TEST_CHANNEL_ID = "5"
TEST_CHANNEL_NAME = "Morning News"
TEST_PHONE = "+1 (555) 010-2030"
TEST_PHONE_KEY = "5550102030"
TEST_SESSION_ID = "CA0001"
TEST_START_TIME = 1_700_000_000.0

HOUR = 60 * 60
DAY = 24 * HOUR


class FakeClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self, start=TEST_START_TIME):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


class MockHTTPResponse:
    """Simple mock for HTTP responses."""

    def __init__(
        self,
        *,
        content=b"",
        url="",
        headers=None,
        chunks=None,
        status_code=200,
        text=None,
        json_data=None,
    ):
        self.content = content
        self.url = url
        self.headers = headers or {}
        self.status_code = status_code
        self.text = text if text is not None else content.decode("utf-8", errors="replace")
        self._chunks = chunks if chunks is not None else [content]
        self._json_data = json_data
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)
        return None

    def iter_content(self, chunk_size=1):
        for chunk in self._chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def json(self):
        if self._json_data is None:
            raise ValueError("No JSON body")
        return self._json_data

    def close(self):
        self.closed = True


def build_rss_xml(items, title="Test Feed"):
    """Build an RSS document with one enclosure item per (title, url) pair."""
    body = "\n".join(
        f"""    <item>
      <title>{item_title}</title>
      <enclosure url="{url}" type="audio/mpeg" length="1000" />
      <guid isPermaLink="false">guid-{idx}</guid>
    </item>"""
        for idx, (item_title, url) in enumerate(items)
    )
    return f"""<?xml version="1.0"?>
<rss version="2.0">
  <channel>
    <title>{title}</title>
    <description>Feed used by the podcast hotline tests</description>
{body}
  </channel>
</rss>"""


def build_rss_xml_with_media(title, media_url):
    return build_rss_xml([(title, media_url)])


def create_rss_response(xml_text, status_code=200):
    return MockHTTPResponse(content=xml_text.encode("utf-8"), text=xml_text, status_code=status_code)


def create_test_config(tmpdir, **overrides):
    """Create a Config whose state and cache live under ``tmpdir``."""
    defaults = {
        "state_dir": f"{tmpdir}/state",
        "cache_dir": f"{tmpdir}/cache",
        "user_agent": "test-agent",
        "resolve_retry_delay": 0,
        "channels": {
            TEST_CHANNEL_ID: {"name": TEST_CHANNEL_NAME, "rss": TEST_FEED_URL},
        },
        "log_level": "INFO",
    }
    defaults.update(overrides)
    return config.Config(**defaults)


def create_ad_config_data(
    *,
    preroll=100,
    midroll=100,
    interval_minutes=10,
    max_ads=3,
    preroll_ads=None,
    midroll_ads=None,
    providers=None,
):
    """Ad inventory document in the ``ad-config.json`` layout."""
    if preroll_ads is None:
        preroll_ads = [
            {
                "id": "pre-1",
                "name": "Local Bakery",
                "audioUrl": "https://ads.example.com/pre-1.mp3",
                "duration": 15,
                "sponsor": "Bakery",
                "revenue": 0.5,
                "weight": 50,
                "active": True,
            }
        ]
    if midroll_ads is None:
        midroll_ads = [
            {
                "id": "mid-1",
                "name": "Hardware Store",
                "audioUrl": "https://ads.example.com/mid-1.mp3",
                "duration": 30,
                "sponsor": "Hardware",
                "revenue": 1.25,
                "active": True,
            }
        ]
    all_providers = {"custom": {"frequency": {"preroll": preroll, "midroll": midroll}}}
    all_providers.update(providers or {})
    return {
        "providers": all_providers,
        "customAds": {"preroll": preroll_ads, "midroll": midroll_ads},
        "settings": {
            "midrollIntervalMinutes": interval_minutes,
            "maxAdsPerSession": max_ads,
            "skipAdAfterSeconds": 5,
            "adVolumeAdjustment": -2.0,
        },
    }


def write_json(path, data):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f)
