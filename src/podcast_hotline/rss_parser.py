"""RSS/Atom feed fetching and episode extraction."""

from __future__ import annotations

import logging
import re

# Bandit: parsing handled via defusedxml safe APIs
import xml.etree.ElementTree as ET  # nosec B405
from typing import Callable, Iterable, List, Optional, Tuple
from xml.sax.saxutils import escape

import requests
from defusedxml import DefusedXmlException
from defusedxml.ElementTree import fromstring as safe_fromstring, ParseError as DefusedXMLParseError

from . import config_constants, downloader
from .models import Degraded, Episode, Ok, Outcome
from .url_cleaner import decode_xml_entities

logger = logging.getLogger(__name__)

FEED_ACCEPT_HEADER = "application/rss+xml, application/xml, text/xml, application/atom+xml, */*"
AUDIO_URL_EXTENSIONS = (".mp3", ".mp4", ".m4a", ".aac", ".ogg")
AUDIO_URL_KEYWORDS = ("audio", "media", "cdn")
FEED_ROOT_MARKERS = ("<rss", "<feed", "<channel")
HTML_MARKERS = ("<html", "<!doctype html")
# HTML detection only looks at the head; descriptions may embed markup
HTML_SNIFF_BYTES = 1024

_FLAGS = re.IGNORECASE | re.DOTALL
_ITEM_BLOCK = re.compile(r"<item\b.*?</item>", _FLAGS)
_ENTRY_BLOCK = re.compile(r"<entry\b.*?</entry>", _FLAGS)
_TITLE_CDATA = re.compile(r"<title>\s*<!\[CDATA\[(.*?)\]\]>\s*</title>", _FLAGS)
_TITLE_PLAIN = re.compile(r"<title[^>]*>(.*?)</title>", _FLAGS)
_ENCLOSURE_URL = re.compile(r"<enclosure[^>]+url=[\"']([^\"']+)[\"']", _FLAGS)
_MEDIA_CONTENT_URL = re.compile(r"<media:content[^>]+url=[\"']([^\"']+)[\"']", _FLAGS)
_AUDIO_LINK_HREF = re.compile(
    r"<link[^>]+href=[\"']([^\"']+)[\"'][^>]*type=[\"']audio[^\"']*[\"']", _FLAGS
)
_GUID_TEXT = re.compile(r"<guid[^>]*>([^<]+)</guid>", _FLAGS)
_CDATA_WRAPPER = re.compile(r"<!\[CDATA\[(.*?)\]\]>", _FLAGS)
_TAG = re.compile(r"<[^>]*>")


def build_feed_headers(user_agent: str = config_constants.DEFAULT_USER_AGENT) -> dict:
    """Browser-like request headers; several feed hosts block bot user agents."""
    return {
        "User-Agent": user_agent,
        "Accept": FEED_ACCEPT_HEADER,
        "Accept-Language": "en-US,en;q=0.9",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
    }


def check_feed_document(text: str, min_bytes: int = config_constants.DEFAULT_MIN_FEED_BYTES) -> Optional[str]:
    """Return why ``text`` is not a usable feed document, or None if it looks fine."""
    if len(text) < min_bytes:
        return f"feed too short ({len(text)} chars)"
    head = text[:HTML_SNIFF_BYTES].lower()
    if any(marker in head for marker in HTML_MARKERS):
        return "received HTML instead of RSS/Atom"
    if not any(marker in text for marker in FEED_ROOT_MARKERS):
        return "content does not look like an RSS/Atom feed"
    return None


def is_playable_audio_url(url: str) -> bool:
    """Heuristic: http(s) URL naming an audio file or a media/CDN host."""
    if not url.startswith("http"):
        return False
    lowered = url.lower()
    return any(ext in lowered for ext in AUDIO_URL_EXTENSIONS) or any(
        keyword in lowered for keyword in AUDIO_URL_KEYWORDS
    )


def _clean_title(raw: str) -> str:
    text = _CDATA_WRAPPER.sub(r"\1", raw)
    text = _TAG.sub("", text)
    return decode_xml_entities(text).strip()


def _flatten_cdata_titles(document: str) -> str:
    # CDATA titles carry raw markup; clean them as the lenient path does, then re-escape
    return _TITLE_CDATA.sub(lambda m: f"<title>{escape(_clean_title(m.group(1)))}</title>", document)


def _local_name(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].lower()


def _namespace(tag: object) -> str:
    if isinstance(tag, str) and tag.startswith("{"):
        return tag[1:].split("}", 1)[0].lower()
    return ""


def _first(items: Iterable[ET.Element], predicate: Callable[[ET.Element], Optional[str]]) -> Optional[str]:
    for el in items:
        value = predicate(el)
        if value:
            return value
    return None


def _strict_audio_url(item: ET.Element) -> Optional[str]:
    descendants = list(item.iter())

    def enclosure(el: ET.Element) -> Optional[str]:
        if _local_name(el.tag) == "enclosure":
            return el.attrib.get("url")
        return None

    def media_content(el: ET.Element) -> Optional[str]:
        if _local_name(el.tag) == "content" and "mrss" in _namespace(el.tag):
            return el.attrib.get("url")
        return None

    def audio_link(el: ET.Element) -> Optional[str]:
        if _local_name(el.tag) == "link" and el.attrib.get("type", "").lower().startswith("audio"):
            return el.attrib.get("href")
        return None

    def guid(el: ET.Element) -> Optional[str]:
        if _local_name(el.tag) == "guid" and el.text:
            return el.text
        return None

    for finder in (enclosure, media_content, audio_link, guid):
        found = _first(descendants, finder)
        if found:
            return found.strip()
    return None


def _strict_candidates(document: str) -> Optional[List[Tuple[Optional[str], Optional[str]]]]:
    """Extract (title, url) pairs from a well-formed document; None if it is not.

    The parser has already decoded entities and CDATA, so values are used as read.
    """
    try:
        root = safe_fromstring(_flatten_cdata_titles(document))
    except (DefusedXMLParseError, DefusedXmlException, ValueError) as exc:
        logger.debug("Strict feed parse failed (%s); using lenient extraction", exc)
        return None
    if root is None:
        return None

    items = [e for e in root.iter() if _local_name(e.tag) == "item"]
    if not items:
        items = [e for e in root.iter() if _local_name(e.tag) == "entry"]

    candidates: List[Tuple[Optional[str], Optional[str]]] = []
    for item in items:
        title_el = next((c for c in item if _local_name(c.tag) == "title"), None)
        title = "".join(title_el.itertext()).strip() if title_el is not None else None
        candidates.append((title, _strict_audio_url(item)))
    return candidates


def _lenient_candidates(document: str) -> List[Tuple[Optional[str], Optional[str]]]:
    """Extract (title, url) pairs by structural matching; tolerates broken markup.

    Values are raw markup here, so CDATA, tags and entities are cleaned off.
    """
    blocks = _ITEM_BLOCK.findall(document) or _ENTRY_BLOCK.findall(document)
    candidates: List[Tuple[Optional[str], Optional[str]]] = []
    for block in blocks:
        title_match = _TITLE_CDATA.search(block) or _TITLE_PLAIN.search(block)
        url_match = (
            _ENCLOSURE_URL.search(block)
            or _MEDIA_CONTENT_URL.search(block)
            or _AUDIO_LINK_HREF.search(block)
            or _GUID_TEXT.search(block)
        )
        candidates.append(
            (
                _clean_title(title_match.group(1)) if title_match else None,
                decode_xml_entities(url_match.group(1).strip()) if url_match else None,
            )
        )
    return candidates


def parse_episodes(
    document: str, max_items: int = config_constants.DEFAULT_MAX_FEED_ITEMS
) -> List[Episode]:
    """Extract up to ``max_items`` playable episodes from a feed document, in feed order.

    Items without a title or without a plausible audio URL are skipped.
    """
    candidates = _strict_candidates(document)
    if candidates is None:
        candidates = _lenient_candidates(document)

    logger.debug("Feed contains %s items", len(candidates))
    episodes: List[Episode] = []
    for idx, (title, audio_url) in enumerate(candidates[:max_items], start=1):
        if title is None or audio_url is None:
            continue
        if title and is_playable_audio_url(audio_url):
            episodes.append(Episode(title=title, audio_url=audio_url))
            logger.debug("Episode %s: %s", idx, title[:60])
        else:
            logger.debug("Skipped item %s: invalid URL or title", idx)
    return episodes


def fetch_episodes_outcome(
    feed_url: str,
    *,
    user_agent: str = config_constants.DEFAULT_USER_AGENT,
    timeout: float = config_constants.DEFAULT_FEED_TIMEOUT_SECONDS,
    min_bytes: int = config_constants.DEFAULT_MIN_FEED_BYTES,
    max_items: int = config_constants.DEFAULT_MAX_FEED_ITEMS,
) -> Outcome[List[Episode]]:
    """Fetch ``feed_url`` once and parse it; every failure degrades to an empty list."""
    try:
        resp = downloader.http_get(feed_url, headers=build_feed_headers(user_agent), timeout=timeout)
    except requests.RequestException as exc:
        logger.warning(f"Failed to fetch feed {feed_url}: {exc}")
        return Degraded(reason=f"fetch failed: {exc}", value=[])

    try:
        if not 200 <= resp.status_code < 300:
            logger.warning("Feed %s returned HTTP %s", feed_url, resp.status_code)
            return Degraded(reason=f"HTTP {resp.status_code}", value=[])
        document = resp.text
    finally:
        resp.close()

    rejection = check_feed_document(document, min_bytes)
    if rejection:
        logger.warning("Rejected feed %s: %s", feed_url, rejection)
        return Degraded(reason=rejection, value=[])

    episodes = parse_episodes(document, max_items)
    if not episodes:
        logger.warning("No playable episodes found in %s", feed_url)
        return Degraded(reason="no playable episodes", value=[])
    logger.info("Parsed %s episodes from %s", len(episodes), feed_url)
    return Ok(episodes)


def fetch_episodes(feed_url: str, **kwargs) -> List[Episode]:
    """Return the playable episodes of ``feed_url`` (empty on any failure)."""
    return fetch_episodes_outcome(feed_url, **kwargs).value


def fetch_latest_episode(feed_url: str, **kwargs) -> Optional[Episode]:
    """Return the first (newest, per feed order) episode or None."""
    episodes = fetch_episodes(feed_url, **kwargs)
    return episodes[0] if episodes else None
