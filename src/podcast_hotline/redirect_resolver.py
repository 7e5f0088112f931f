"""Confirm that an audio URL resolves to something a media fetcher can play.

Redirects are followed by hand so every hop can be logged and given
provider-specific headers. Simplecast rejects bare HEAD requests with 403 while
serving the same URL to real players, so that one answer counts as usable.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urljoin

import requests

from . import config_constants, downloader

logger = logging.getLogger(__name__)

SIMPLECAST_HOST_MARKER = "simplecastaudio.com"
SIMPLECAST_PLAYER_ORIGIN = "https://player.simplecast.com"
SIMPLECAST_HEAD_STATUS_ASSUMED_OK = 403


@dataclass
class ResolveResult:
    """Result of resolving an audio URL.

    Attributes:
        success: Whether the URL is considered playable
        final_url: URL after following redirects (None on failure)
        content_type: Content-Type reported by the final hop
        content_length: Content-Length of the final hop, if given
        supports_range_requests: True when the final hop advertises byte ranges
        note: Caveat attached to a success (e.g. assumed-valid provider answer)
        error: Failure reason when success is False
        attempts: Number of resolution attempts made
    """

    success: bool
    original_url: str
    final_url: Optional[str] = None
    content_type: Optional[str] = None
    content_length: Optional[int] = None
    supports_range_requests: bool = False
    note: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1


class _ResolveFailure(Exception):
    """One resolution attempt failed; the whole resolution may be retried."""


def is_simplecast_url(url: str) -> bool:
    return SIMPLECAST_HOST_MARKER in url.lower()


def build_head_headers(
    simplecast: bool, user_agent: str = config_constants.DEFAULT_VALIDATION_USER_AGENT
) -> Dict[str, Optional[str]]:
    """HEAD request headers; Simplecast wants to see its own player as the referrer."""
    return {
        "User-Agent": user_agent,
        "Accept": downloader.AUDIO_ACCEPT_HEADER,
        "Accept-Encoding": "identity",
        "Referer": f"{SIMPLECAST_PLAYER_ORIGIN}/" if simplecast else None,
        "Origin": SIMPLECAST_PLAYER_ORIGIN if simplecast else None,
    }


def _parse_content_length(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value else None
    except (TypeError, ValueError):
        return None


def _walk_redirects(url: str, *, user_agent: str, timeout: float, max_redirects: int) -> ResolveResult:
    """Follow redirects from ``url`` and validate the final hop.

    Raises:
        _ResolveFailure: on transport errors, bad statuses or redirect loops
    """
    current = url
    redirects = 0
    while True:
        simplecast = is_simplecast_url(url) or is_simplecast_url(current)
        logger.debug("Checking URL (redirect %s): %s", redirects, current)
        try:
            resp = downloader.http_head(
                current, headers=build_head_headers(simplecast, user_agent), timeout=timeout
            )
        except requests.RequestException as exc:
            raise _ResolveFailure(f"request failed: {exc}") from exc

        try:
            status = resp.status_code
            headers = resp.headers
        finally:
            resp.close()

        if 300 <= status < 400:
            location = headers.get("Location")
            if not location:
                raise _ResolveFailure(f"redirect {status} without Location header")
            if redirects >= max_redirects:
                raise _ResolveFailure(f"too many redirects ({max_redirects})")
            current = urljoin(current, location)
            redirects += 1
            logger.debug("Following redirect to: %s", current)
            continue

        if simplecast and status == SIMPLECAST_HEAD_STATUS_ASSUMED_OK:
            logger.info("Simplecast answered HEAD with 403; assuming %s is playable", current)
            return ResolveResult(
                success=True,
                original_url=url,
                final_url=current,
                content_type="audio/mpeg",
                content_length=None,
                supports_range_requests=True,
                note=f"Assumed valid ({status} is common for Simplecast HEAD requests)",
            )

        if not 200 <= status < 300:
            raise _ResolveFailure(f"HTTP {status}")

        return ResolveResult(
            success=True,
            original_url=url,
            final_url=current,
            content_type=headers.get("Content-Type"),
            content_length=_parse_content_length(headers.get("Content-Length")),
            supports_range_requests=headers.get("Accept-Ranges", "").lower() == "bytes",
        )


def resolve_and_validate_url(
    url: str,
    *,
    user_agent: str = config_constants.DEFAULT_VALIDATION_USER_AGENT,
    timeout: float = config_constants.DEFAULT_RESOLVE_TIMEOUT_SECONDS,
    max_redirects: int = config_constants.DEFAULT_MAX_REDIRECTS,
    retries: int = config_constants.DEFAULT_RESOLVE_RETRIES,
    retry_delay: float = config_constants.DEFAULT_RESOLVE_RETRY_DELAY_SECONDS,
) -> ResolveResult:
    """Resolve ``url`` to its final playable location, retrying the whole walk.

    Never raises; a failure after ``retries`` attempts is reported in the result.
    """
    attempts = max(1, retries)
    last_error = ""
    for attempt in range(1, attempts + 1):
        try:
            result = _walk_redirects(url, user_agent=user_agent, timeout=timeout, max_redirects=max_redirects)
        except _ResolveFailure as exc:
            last_error = str(exc)
            logger.warning(f"URL resolution attempt {attempt}/{attempts} failed for {url}: {exc}")
            if attempt < attempts:
                time.sleep(retry_delay)
            continue
        result.attempts = attempt
        logger.debug("URL resolved successfully: %s", result.final_url)
        return result

    logger.error(f"URL resolution failed after {attempts} attempts: {url}")
    return ResolveResult(success=False, original_url=url, error=last_error, attempts=attempts)


def resolve_simplecast_injector(
    injector_url: str,
    *,
    user_agent: str = config_constants.DEFAULT_VALIDATION_USER_AGENT,
    timeout: float = 10,
) -> ResolveResult:
    """Single HEAD against a Simplecast injector URL, returning its redirect target.

    When the injector does not redirect it is returned as the final URL.
    """
    try:
        resp = downloader.http_head(
            injector_url, headers=build_head_headers(True, user_agent), timeout=timeout
        )
    except requests.RequestException as exc:
        logger.warning(f"Simplecast resolution error for {injector_url}: {exc}")
        return ResolveResult(success=False, original_url=injector_url, error=str(exc))

    try:
        location = resp.headers.get("Location") if 300 <= resp.status_code < 400 else None
    finally:
        resp.close()

    if location:
        resolved = urljoin(injector_url, location)
        logger.info("Simplecast injector redirected to %s", resolved)
        return ResolveResult(success=True, original_url=injector_url, final_url=resolved)
    logger.debug("No redirect from injector; it may work directly: %s", injector_url)
    return ResolveResult(success=True, original_url=injector_url, final_url=injector_url)
