"""On-disk cache of downloaded episode audio.

Two retention classes exist:

- ``latest``: the newest episode of a channel, kept until a newer one replaces it.
  At most one ``latest`` record exists per channel.
- ``temporary``: episodes a caller asked for, kept for ``temporary_ttl_hours``.

Metadata lives in ``cache_metadata.json`` next to the audio files and is keyed
by ``<channel>_<hash of episode URL>``.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from . import config_constants, downloader, rss_parser, url_cleaner
from .exceptions import EpisodeDownloadError
from .models import CachedEpisodeRecord, CacheType, Episode
from .storage import JsonStateFile

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600
BYTES_PER_MB = 1024 * 1024
CACHE_FILE_EXTENSION = ".mp3"
PARTIAL_SUFFIX = ".part"
# Feed placeholders used for channels without a downloadable RSS source
NON_RSS_FEED_PREFIXES = ("STATIC_", "YOUTUBE_")

LatestEpisodeFetcher = Callable[[str], Optional[Episode]]


def _empty_metadata() -> Dict[str, Any]:
    return {"episodes": {}, "last_cleanup": None}


class EpisodeCache:
    """Content-addressed store of episode audio with latest/temporary retention.

    Every operation re-reads ``cache_metadata.json`` inside a locked transaction,
    so a handler and the maintenance job can share one cache directory.
    """

    def __init__(
        self,
        cache_dir: str | Path,
        *,
        temporary_ttl_hours: float = config_constants.DEFAULT_TEMPORARY_TTL_HOURS,
        user_agent: str = config_constants.DEFAULT_VALIDATION_USER_AGENT,
        download_timeout: float = config_constants.DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
        background_workers: int = 2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.temporary_ttl_seconds = temporary_ttl_hours * SECONDS_PER_HOUR
        self.user_agent = user_agent
        self.download_timeout = download_timeout
        self._clock = clock

        self._state = JsonStateFile(
            self.cache_dir / config_constants.CACHE_METADATA_FILENAME, _empty_metadata
        )

        self._channel_locks: Dict[str, threading.Lock] = {}
        self._channel_locks_guard = threading.Lock()
        self._background_workers = background_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._background_jobs: Dict[str, Future] = {}
        self._jobs_lock = threading.Lock()

    # -- keys and records -------------------------------------------------

    @staticmethod
    def get_cache_key(channel_id: Any, episode_url: str) -> str:
        """Stable key: identical URLs under one channel share a slot."""
        digest = hashlib.sha256(episode_url.encode("utf-8")).hexdigest()[:32]
        return f"{channel_id}_{digest}"

    @contextmanager
    def _episodes(self) -> Iterator[Dict[str, Any]]:
        with self._state.transaction() as data:
            if not isinstance(data.get("episodes"), dict):
                data["episodes"] = {}
            yield data["episodes"]

    def _record(self, episodes: Dict[str, Any], cache_key: str) -> Optional[CachedEpisodeRecord]:
        raw = episodes.get(cache_key)
        if raw is None:
            return None
        try:
            return CachedEpisodeRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Dropping malformed cache record %s: %s", cache_key, exc)
            episodes.pop(cache_key, None)
            return None

    def _records(self, episodes: Dict[str, Any]) -> List[Tuple[str, CachedEpisodeRecord]]:
        pairs = []
        for key in list(episodes):
            record = self._record(episodes, key)
            if record is not None:
                pairs.append((key, record))
        return pairs

    def _path_for(self, record: CachedEpisodeRecord) -> Path:
        return self.cache_dir / record.filename

    def _is_expired(self, record: CachedEpisodeRecord) -> bool:
        if record.type != "temporary":
            return False
        return self._clock() - record.download_time > self.temporary_ttl_seconds

    def _discard(self, episodes: Dict[str, Any], cache_key: str, record: CachedEpisodeRecord) -> None:
        path = self._path_for(record)
        if path.exists():
            path.unlink()
            logger.info("Removed cached episode: %s", record.episode_title)
        episodes.pop(cache_key, None)

    def _live_record(self, episodes: Dict[str, Any], cache_key: str) -> Optional[CachedEpisodeRecord]:
        """Return the record if its file exists and it has not expired.

        Missing files purge their metadata; expired temporary entries are evicted.
        """
        record = self._record(episodes, cache_key)
        if record is None:
            return None
        if not self._path_for(record).exists():
            logger.warning("Cached file for %s vanished; purging metadata", cache_key)
            episodes.pop(cache_key, None)
            return None
        if self._is_expired(record):
            self._discard(episodes, cache_key, record)
            return None
        return record

    def _channel_lock(self, channel_id: str) -> threading.Lock:
        with self._channel_locks_guard:
            return self._channel_locks.setdefault(channel_id, threading.Lock())

    # -- lookups ----------------------------------------------------------

    def is_cached(self, channel_id: Any, episode_url: str) -> bool:
        """True if the episode is cached, its file exists and it has not expired."""
        cache_key = self.get_cache_key(channel_id, episode_url)
        with self._episodes() as episodes:
            return self._live_record(episodes, cache_key) is not None

    def get_cached_episode_path(self, channel_id: Any, episode_url: str) -> Optional[str]:
        cache_key = self.get_cache_key(channel_id, episode_url)
        with self._episodes() as episodes:
            record = self._live_record(episodes, cache_key)
            return str(self._path_for(record)) if record else None

    def get_latest_cached_episode(
        self, channel_id: Any
    ) -> Optional[Tuple[CachedEpisodeRecord, str]]:
        """Return the channel's ``latest`` record and its file path, if present."""
        channel_id = str(channel_id)
        with self._episodes() as episodes:
            for _, record in self._records(episodes):
                if record.channel_id == channel_id and record.type == "latest":
                    path = self._path_for(record)
                    if path.exists():
                        return record, str(path)
        return None

    def get_cache_stats(self) -> Dict[str, Any]:
        with self._state.transaction() as data:
            records = [record for _, record in self._records(data.get("episodes") or {})]
            last_cleanup = data.get("last_cleanup")
        return {
            "total_episodes": len(records),
            "latest_episodes": sum(1 for r in records if r.type == "latest"),
            "temporary_episodes": sum(1 for r in records if r.type == "temporary"),
            "total_size_mb": round(sum(r.file_size for r in records) / BYTES_PER_MB),
            "last_cleanup": last_cleanup,
        }

    # -- mutations --------------------------------------------------------

    def remove_episode(self, cache_key: str) -> bool:
        """Delete a cached episode's file and metadata. Returns False if unknown."""
        with self._episodes() as episodes:
            record = self._record(episodes, cache_key)
            if record is None:
                return False
            self._discard(episodes, cache_key, record)
            return True

    def _drop_latest_except(self, episodes: Dict[str, Any], channel_id: str, keep_key: str) -> None:
        for key, record in self._records(episodes):
            if record.channel_id == channel_id and record.type == "latest" and key != keep_key:
                logger.info("Replacing latest episode of channel %s: %s", channel_id, record.episode_title)
                self._discard(episodes, key, record)

    def download(
        self,
        channel_id: Any,
        episode_url: str,
        episode_title: str,
        cache_type: CacheType = "temporary",
    ) -> str:
        """Download an episode into the cache and return its file path.

        A ``latest`` download replaces the channel's previous latest episode. A
        ``temporary`` download of an episode already held as latest keeps it latest.

        Raises:
            EpisodeDownloadError: if the download fails (the partial file is removed)
            StorageError: if the metadata cannot be saved
        """
        channel_id = str(channel_id)
        cache_key = self.get_cache_key(channel_id, episode_url)
        filename = f"{cache_key}{CACHE_FILE_EXTENSION}"
        final_path = self.cache_dir / filename
        # Unique per download so concurrent fetches of one key never share a file
        partial_path = self.cache_dir / f"{filename}.{uuid.uuid4().hex}{PARTIAL_SUFFIX}"

        logger.info("Downloading episode for channel %s: %s", channel_id, episode_title)
        downloader.download_to_file(
            episode_url,
            str(partial_path),
            user_agent=self.user_agent,
            timeout=self.download_timeout,
            description=f"Caching {episode_title[:50]}",
        )
        with self._episodes() as episodes:
            try:
                os.replace(partial_path, final_path)
            except OSError as exc:
                if partial_path.exists():
                    partial_path.unlink()
                raise EpisodeDownloadError(
                    f"Could not move downloaded file into place: {exc}", url=episode_url
                ) from exc

            existing = self._record(episodes, cache_key)
            if existing is not None and existing.type == "latest":
                cache_type = "latest"
            if cache_type == "latest":
                self._drop_latest_except(episodes, channel_id, cache_key)

            file_size = final_path.stat().st_size
            record = CachedEpisodeRecord(
                channel_id=channel_id,
                episode_url=episode_url,
                episode_title=episode_title,
                filename=filename,
                download_time=self._clock(),
                type=cache_type,
                file_size=file_size,
            )
            episodes[cache_key] = record.to_dict()
        logger.info(
            "Episode cached: %s (%sMB, %s)", episode_title, file_size // BYTES_PER_MB, cache_type
        )
        return str(final_path)

    def _promote(self, channel_id: str, cache_key: str, episode_title: str) -> Optional[str]:
        with self._episodes() as episodes:
            record = self._live_record(episodes, cache_key)
            if record is None:
                return None
            if record.type != "latest":
                self._drop_latest_except(episodes, channel_id, cache_key)
                record.type = "latest"
                episodes[cache_key] = record.to_dict()
                logger.info("Promoted cached episode to latest: %s", episode_title)
            return str(self._path_for(record))

    def ensure_latest(self, channel_id: Any, episode_url: str, episode_title: str) -> str:
        """Make ``episode_url`` the channel's single ``latest`` cached episode.

        An already cached temporary copy is promoted instead of re-downloaded.
        The previous latest episode is removed once the new one is in place.

        Raises:
            EpisodeDownloadError: if a needed download fails
        """
        channel_id = str(channel_id)
        cache_key = self.get_cache_key(channel_id, episode_url)
        with self._channel_lock(channel_id):
            promoted = self._promote(channel_id, cache_key, episode_title)
            if promoted is not None:
                return promoted
            return self.download(channel_id, episode_url, episode_title, "latest")

    def evict_expired(self) -> int:
        """Remove temporary episodes past their TTL and stamp the sweep time."""
        removed = 0
        with self._state.transaction() as data:
            episodes = data.setdefault("episodes", {})
            for key, record in self._records(episodes):
                if self._is_expired(record):
                    self._discard(episodes, key, record)
                    removed += 1
            data["last_cleanup"] = self._clock()
        if removed:
            logger.info("Cleaned up %s expired episodes", removed)
        return removed

    # -- background caching -----------------------------------------------

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._jobs_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._background_workers, thread_name_prefix="episode-cache"
                )
            return self._executor

    def _background_download(self, channel_id: str, episode_url: str, episode_title: str) -> Optional[str]:
        try:
            path = self.download(channel_id, episode_url, episode_title, "temporary")
        except EpisodeDownloadError as exc:
            logger.error(f"Background cache failed: {episode_title[:50]} - {exc}")
            return None
        logger.info("Background cache completed: %s", episode_title[:50])
        return path

    def start_background_caching(self, channel_id: Any, episode_url: str, episode_title: str) -> bool:
        """Queue a temporary download without blocking the caller.

        Returns False when the episode is already cached or already queued.
        """
        channel_id = str(channel_id)
        cache_key = self.get_cache_key(channel_id, episode_url)
        if self.is_cached(channel_id, episode_url):
            return False
        executor = self._get_executor()
        with self._jobs_lock:
            if cache_key in self._background_jobs:
                return False
            future = executor.submit(self._background_download, channel_id, episode_url, episode_title)
            self._background_jobs[cache_key] = future

        def _forget(_: Future) -> None:
            with self._jobs_lock:
                self._background_jobs.pop(cache_key, None)

        future.add_done_callback(_forget)
        logger.info("Started background cache: %s", episode_title[:50])
        return True

    def is_background_caching(self, channel_id: Any, episode_url: str) -> bool:
        with self._jobs_lock:
            return self.get_cache_key(channel_id, episode_url) in self._background_jobs

    def wait_for_background(
        self, channel_id: Any, episode_url: str, timeout: Optional[float] = None
    ) -> Optional[str]:
        """Block until a queued download finishes; returns its path or None."""
        with self._jobs_lock:
            future = self._background_jobs.get(self.get_cache_key(channel_id, episode_url))
        if future is None:
            return None
        return future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._jobs_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    # -- feed-driven refresh --------------------------------------------------

    def check_for_newer_episodes(
        self,
        channel_id: Any,
        current_latest_url: Optional[str],
        feed_url: str,
        fetch_latest: LatestEpisodeFetcher = rss_parser.fetch_latest_episode,
    ) -> Optional[Episode]:
        """Cache the feed's newest episode if it differs from ``current_latest_url``.

        Returns the new episode, or None when nothing changed or the refresh failed.
        """
        logger.debug("Checking for newer episodes on channel %s", channel_id)
        latest = fetch_latest(feed_url)
        if latest is None:
            return None
        latest_url = url_cleaner.clean_audio_url(latest.audio_url)
        if latest_url == current_latest_url:
            return None
        logger.info("New episode detected for channel %s: %s", channel_id, latest.title[:50])
        try:
            self.ensure_latest(channel_id, latest_url, latest.title)
        except EpisodeDownloadError as exc:
            logger.error(f"Failed to cache newer episode on channel {channel_id}: {exc}")
            return None
        return latest

    def preload_latest_episodes(
        self,
        feeds: Mapping[str, str],
        fetch_latest: LatestEpisodeFetcher = rss_parser.fetch_latest_episode,
    ) -> Dict[str, bool]:
        """Cache the newest episode of every channel in ``feeds`` (channel -> RSS URL).

        Failures are logged per channel and never abort the others.
        """
        eligible = {
            channel_id: feed_url
            for channel_id, feed_url in feeds.items()
            if feed_url and not feed_url.startswith(NON_RSS_FEED_PREFIXES)
        }
        logger.info("Preloading latest episodes for %s channels", len(eligible))

        def _preload(channel_id: str, feed_url: str) -> bool:
            latest = fetch_latest(feed_url)
            if latest is None:
                logger.warning("No latest episode available for channel %s", channel_id)
                return False
            try:
                self.ensure_latest(
                    channel_id, url_cleaner.clean_audio_url(latest.audio_url), latest.title
                )
            except EpisodeDownloadError as exc:
                logger.warning(f"Failed to preload latest for channel {channel_id}: {exc}")
                return False
            logger.info("Preloaded latest for channel %s: %s", channel_id, latest.title[:40])
            return True

        results: Dict[str, bool] = {}
        if not eligible:
            return results
        with ThreadPoolExecutor(
            max_workers=min(len(eligible), 4), thread_name_prefix="preload"
        ) as pool:
            futures = {cid: pool.submit(_preload, cid, url) for cid, url in eligible.items()}
            for channel_id, future in futures.items():
                results[channel_id] = future.result()
        return results
