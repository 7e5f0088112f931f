"""HTTP session management and request helpers for podcast_hotline."""

from __future__ import annotations

import atexit
import logging
import os
import threading
from typing import Any, cast, Dict, List, Mapping, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.utils import requote_uri
from urllib3.util.retry import Retry

from . import progress
from .exceptions import EpisodeDownloadError
from .progress import ProgressReporter

logger = logging.getLogger(__name__)

# Track if we've suppressed urllib3 logs (lazy initialization)
_urllib3_logs_suppressed = False


def _suppress_urllib3_debug_logs() -> None:
    """Suppress verbose urllib3 debug logs when root logger is DEBUG."""
    global _urllib3_logs_suppressed
    if _urllib3_logs_suppressed:
        return

    root_logger = logging.getLogger()
    root_level = root_logger.level if root_logger.level else logging.INFO
    if root_level <= logging.DEBUG:
        for logger_name in ("urllib3", "urllib3.connectionpool", "urllib3.connection"):
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    _urllib3_logs_suppressed = True


DEFAULT_HTTP_BACKOFF_FACTOR = 0.5
# Connection-level retries only: a request that reached the server is never
# replayed here, callers own their retry policy.
DEFAULT_HTTP_CONNECT_RETRIES = 2
DOWNLOAD_CHUNK_SIZE = 1024 * 256
AUDIO_ACCEPT_HEADER = "audio/mpeg, audio/mp4, audio/ogg, audio/wav, audio/*, */*"

_THREAD_LOCAL = threading.local()
_SESSION_REGISTRY: List[requests.Session] = []
_SESSION_REGISTRY_LOCK = threading.Lock()


def normalize_url(url: str) -> str:
    """Normalize URLs while preserving already-encoded segments."""
    normalized = requote_uri(url)
    if normalized != url:
        logger.debug("Normalized URL %s -> %s", url, normalized)
    return cast(str, normalized)


def _configure_http_session(session: requests.Session) -> None:
    """Attach connect-retry HTTP adapters to a session."""

    class LoggingRetry(Retry):
        def increment(self, method=None, url=None, *args, **kwargs):  # type: ignore[override]
            new_retry = super().increment(method=method, url=url, *args, **kwargs)
            attempt = len(new_retry.history) + 1
            reason = kwargs.get("error") or kwargs.get("response")
            logger.warning(
                f"Retrying HTTP connection (attempt {attempt}/{new_retry.total}) "
                f"{method or ''} {url or ''} due to {reason}"
            )
            return new_retry

    retry = LoggingRetry(
        total=DEFAULT_HTTP_CONNECT_RETRIES,
        connect=DEFAULT_HTTP_CONNECT_RETRIES,
        read=0,
        status=0,
        backoff_factor=DEFAULT_HTTP_BACKOFF_FACTOR,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    logger.debug("Configured HTTP session %s with connect-retry adapters", hex(id(session)))


def _get_thread_request_session() -> requests.Session:
    _suppress_urllib3_debug_logs()

    session = getattr(_THREAD_LOCAL, "session", None)
    if session is None:
        session = requests.Session()
        _configure_http_session(session)
        setattr(_THREAD_LOCAL, "session", session)
        with _SESSION_REGISTRY_LOCK:
            _SESSION_REGISTRY.append(session)
        logger.debug("Created new thread-local HTTP session %s", hex(id(session)))
    return session


def _close_all_sessions() -> None:
    with _SESSION_REGISTRY_LOCK:
        for session in _SESSION_REGISTRY:
            try:
                session.close()
            # Best-effort cleanup; ignore shutdown errors
            except Exception:  # pragma: no cover  # nosec B110
                pass
        _SESSION_REGISTRY.clear()


atexit.register(_close_all_sessions)


def http_get(
    url: str, *, headers: Mapping[str, str], timeout: float, stream: bool = False
) -> requests.Response:
    """Issue a GET (redirects followed) and return the response.

    Raises:
        requests.RequestException: on transport failures. HTTP error statuses are
            returned, not raised; callers decide what a non-2xx means to them.
    """
    session = _get_thread_request_session()
    normalized_url = normalize_url(url)
    logger.debug("GET %s (timeout=%s, stream=%s)", normalized_url, timeout, stream)
    return session.get(normalized_url, headers=dict(headers), timeout=timeout, stream=stream)


def http_head(url: str, *, headers: Mapping[str, str], timeout: float) -> requests.Response:
    """Issue a HEAD without following redirects so each hop can be inspected."""
    session = _get_thread_request_session()
    normalized_url = normalize_url(url)
    # Drop headers explicitly set to None (provider-specific ones that do not apply)
    clean_headers = {k: v for k, v in headers.items() if v is not None}
    logger.debug("HEAD %s (timeout=%s)", normalized_url, timeout)
    return session.head(
        normalized_url, headers=clean_headers, timeout=timeout, allow_redirects=False
    )


def http_post_json(
    url: str,
    payload: Dict[str, Any],
    *,
    headers: Mapping[str, str],
    timeout: float,
) -> requests.Response:
    """POST a JSON body and return the response (non-2xx raises HTTPError)."""
    session = _get_thread_request_session()
    logger.debug("POST %s (timeout=%s)", url, timeout)
    resp = session.post(url, json=payload, headers=dict(headers), timeout=timeout)
    resp.raise_for_status()
    return resp


def _remove_partial(out_path: str) -> None:
    try:
        if os.path.exists(out_path):
            os.remove(out_path)
            logger.debug("Removed partial download %s", out_path)
    except OSError as exc:
        logger.warning(f"Failed to remove partial download {out_path}: {exc}")


def download_to_file(
    url: str,
    out_path: str,
    *,
    user_agent: str,
    timeout: float,
    description: Optional[str] = None,
) -> int:
    """Stream ``url`` into ``out_path`` and return the number of bytes written.

    Raises:
        EpisodeDownloadError: on any transport, HTTP or filesystem failure. The
            partial file is deleted before raising.
    """
    headers = {"User-Agent": user_agent, "Accept": AUDIO_ACCEPT_HEADER}
    resp: Optional[requests.Response] = None
    try:
        resp = http_get(url, headers=headers, timeout=timeout, stream=True)
        resp.raise_for_status()

        content_length = resp.headers.get("Content-Length")
        try:
            total_size = int(content_length) if content_length else None
        except (TypeError, ValueError):
            total_size = None

        os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
        label = description or f"Downloading {os.path.basename(out_path)}"

        total_bytes = 0
        with (
            open(out_path, "wb") as f,
            progress.progress_context(total_size, label) as reporter,
        ):
            for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if not chunk:
                    continue
                f.write(chunk)
                total_bytes += len(chunk)
                cast(ProgressReporter, reporter).update(len(chunk))
        logger.debug("Finished downloading %s (%s bytes written)", url, total_bytes)
        return total_bytes
    except requests.HTTPError as exc:
        _remove_partial(out_path)
        status = exc.response.status_code if exc.response is not None else None
        raise EpisodeDownloadError(f"Download failed for {url}", url=url, status_code=status) from exc
    except (requests.RequestException, OSError) as exc:
        _remove_partial(out_path)
        raise EpisodeDownloadError(f"Download failed for {url}: {exc}", url=url) from exc
    finally:
        if resp is not None:
            resp.close()
