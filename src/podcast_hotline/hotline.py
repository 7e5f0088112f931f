"""Entry points used by the call-handling layer.

``Hotline`` wires the feed resolver, URL cleaner, redirect validator, episode
cache, ad engine and caller session store together. Every operation degrades to
a safe answer (play from cache, skip the ad, go back to the menu) instead of
raising into the call flow.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from . import redirect_resolver, rss_parser, url_cleaner
from .ad_system import (
    AdEngine,
    AdResponse,
    build_provider_client,
    ExemptionList,
    load_ad_config,
    SessionSummary,
)
from .caller_sessions import CallerSessionStore, ResumePrompt
from .config import Config
from .episode_cache import EpisodeCache
from .models import Degraded, Ok, Outcome

logger = logging.getLogger(__name__)


@dataclass
class CallStart:
    ads_enabled: bool
    playback_speed: float
    resume_prompt: Optional[ResumePrompt] = None


@dataclass
class PlaybackInstruction:
    """What to play after a channel was selected.

    ``audio_url`` is either a local cached file path (``from_cache``) or the
    validated remote URL. ``episode_url`` is the cleaned feed URL, the identity
    used for caching and caller positions.
    """

    channel_id: str
    episode_title: str
    episode_url: str
    audio_url: str
    from_cache: bool
    playback_speed: float
    resume_position: int = 0
    content_type: Optional[str] = None
    note: Optional[str] = None


class Hotline:
    def __init__(
        self,
        config: Config,
        *,
        cache: EpisodeCache,
        sessions: CallerSessionStore,
        ad_engine: AdEngine,
    ) -> None:
        self.config = config
        self.cache = cache
        self.sessions = sessions
        self.ad_engine = ad_engine
        self._callers: Dict[str, str] = {}
        self._callers_lock = threading.Lock()
        self._reaper_stop = threading.Event()
        self._reaper_thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, cfg: Config) -> "Hotline":
        ad_config = load_ad_config(cfg.ad_config_path)
        engine = AdEngine(
            ad_config,
            ExemptionList(cfg.exempt_numbers_path),
            provider=build_provider_client(
                ad_config, api_key=cfg.ad_provider_api_key, timeout=cfg.provider_timeout
            ),
        )
        cache = EpisodeCache(
            cfg.cache_dir,
            temporary_ttl_hours=cfg.temporary_ttl_hours,
            user_agent=cfg.validation_user_agent,
            download_timeout=cfg.download_timeout,
        )
        sessions = CallerSessionStore(
            cfg.sessions_path,
            default_playback_speed=cfg.default_playback_speed,
            session_ttl_days=cfg.session_ttl_days,
            zipcode_ttl_days=cfg.zipcode_ttl_days,
            resume_threshold_seconds=cfg.resume_threshold_seconds,
            ad_break_interval_seconds=cfg.ad_break_interval_seconds,
            sweep_interval_seconds=cfg.session_sweep_interval_seconds,
        )
        return cls(cfg, cache=cache, sessions=sessions, ad_engine=engine)

    def start(self) -> None:
        """Start background maintenance for a long-running call handler.

        Runs the caller-session sweep and reaps ad sessions of calls that never
        hung up cleanly, every ``idle_reap_interval_seconds``.
        """
        self.sessions.start_cleanup_thread()
        if self._reaper_thread is not None and self._reaper_thread.is_alive():
            return
        self._reaper_stop.clear()
        self._reaper_thread = threading.Thread(
            target=self._reap_loop, name="ad-session-reaper", daemon=True
        )
        self._reaper_thread.start()

    def close(self) -> None:
        self._reaper_stop.set()
        thread, self._reaper_thread = self._reaper_thread, None
        if thread is not None:
            thread.join()
        self.sessions.stop_cleanup_thread()
        self.cache.shutdown()

    def reap_idle_sessions(self) -> List[SessionSummary]:
        """End ad sessions idle longer than ``idle_session_timeout_seconds``."""
        reaped = self.ad_engine.reap_idle_sessions(self.config.idle_session_timeout_seconds)
        with self._callers_lock:
            for summary in reaped:
                self._callers.pop(summary.session_id, None)
        return reaped

    def _reap_loop(self) -> None:
        while not self._reaper_stop.wait(self.config.idle_reap_interval_seconds):
            try:
                self.reap_idle_sessions()
            except Exception as exc:
                logger.error(f"Idle ad session reap failed: {exc}", exc_info=True)

    def _phone_for(self, session_id: str) -> Optional[str]:
        with self._callers_lock:
            return self._callers.get(session_id)

    def _channel_name(self, channel_id: str) -> Optional[str]:
        channel = self.config.channels.get(str(channel_id))
        return channel.name if channel else None

    # -- call lifecycle -------------------------------------------------------

    def start_call(self, session_id: str, phone_number: str) -> CallStart:
        with self._callers_lock:
            self._callers[session_id] = phone_number
        ads_enabled = self.ad_engine.init_session(session_id, phone_number)
        resume_prompt = None
        if self.sessions.has_resumable_session(phone_number):
            resume_prompt = self.sessions.generate_resume_prompt(phone_number)
        return CallStart(
            ads_enabled=ads_enabled,
            playback_speed=self.sessions.get_playback_speed(phone_number),
            resume_prompt=resume_prompt,
        )

    def end_session(self, session_id: str) -> Optional[SessionSummary]:
        """Tear down everything held for a call; safe to call more than once."""
        with self._callers_lock:
            self._callers.pop(session_id, None)
        return self.ad_engine.end_session(session_id)

    # -- playback -------------------------------------------------------------

    def _resume_position(self, phone_number: Optional[str], episode_url: str) -> int:
        if not phone_number or not self.sessions.has_resumable_session(phone_number):
            return 0
        record = self.sessions.get_last_position(phone_number)
        if record is None or record.episode_url != episode_url:
            return 0
        return record.position_seconds

    def _from_cache(
        self, channel_id: str, phone_number: Optional[str], reason: str
    ) -> Outcome[Optional[PlaybackInstruction]]:
        cached = self.cache.get_latest_cached_episode(channel_id)
        if cached is None:
            return Degraded(reason=reason, value=None)
        record, path = cached
        logger.info("Falling back to cached latest episode for channel %s (%s)", channel_id, reason)
        return Ok(
            PlaybackInstruction(
                channel_id=channel_id,
                episode_title=record.episode_title,
                episode_url=record.episode_url,
                audio_url=path,
                from_cache=True,
                playback_speed=self._speed(phone_number),
                resume_position=self._resume_position(phone_number, record.episode_url),
                note=reason,
            )
        )

    def _speed(self, phone_number: Optional[str]) -> float:
        if not phone_number:
            return self.config.default_playback_speed
        return self.sessions.get_playback_speed(phone_number)

    def select_channel_outcome(
        self, session_id: str, channel_id: str
    ) -> Outcome[Optional[PlaybackInstruction]]:
        """Decide what to play for ``channel_id``; ``Degraded`` means back to the menu."""
        channel_id = str(channel_id)
        channel = self.config.channels.get(channel_id)
        if channel is None:
            return Degraded(reason=f"unknown channel {channel_id}", value=None)
        phone_number = self._phone_for(session_id)

        feed = rss_parser.fetch_episodes_outcome(
            channel.rss_url,
            user_agent=self.config.user_agent,
            timeout=self.config.feed_timeout,
            min_bytes=self.config.min_feed_bytes,
            max_items=self.config.max_feed_items,
        )
        if not feed.ok:
            return self._from_cache(channel_id, phone_number, f"feed unavailable: {feed.reason}")

        episode = feed.value[0]
        episode_url = url_cleaner.clean_audio_url(episode.audio_url)
        base = dict(
            channel_id=channel_id,
            episode_title=episode.title,
            episode_url=episode_url,
            playback_speed=self._speed(phone_number),
            resume_position=self._resume_position(phone_number, episode_url),
        )

        cached_path = self.cache.get_cached_episode_path(channel_id, episode_url)
        if cached_path:
            return Ok(PlaybackInstruction(audio_url=cached_path, from_cache=True, **base))

        resolved = redirect_resolver.resolve_and_validate_url(
            episode_url,
            user_agent=self.config.validation_user_agent,
            timeout=self.config.resolve_timeout,
            max_redirects=self.config.max_redirects,
            retries=self.config.resolve_retries,
            retry_delay=self.config.resolve_retry_delay,
        )
        if not resolved.success or not resolved.final_url:
            return self._from_cache(
                channel_id, phone_number, f"audio URL did not resolve: {resolved.error}"
            )

        self.cache.start_background_caching(channel_id, episode_url, episode.title)
        return Ok(
            PlaybackInstruction(
                audio_url=resolved.final_url,
                from_cache=False,
                content_type=resolved.content_type,
                note=resolved.note,
                **base,
            )
        )

    def select_channel(self, session_id: str, channel_id: str) -> Optional[PlaybackInstruction]:
        return self.select_channel_outcome(session_id, channel_id).value

    def report_position(
        self,
        phone_number: str,
        channel_id: str,
        episode_url: str,
        position_seconds: int,
        title: Optional[str] = None,
    ) -> None:
        self.sessions.update_position(phone_number, channel_id, episode_url, position_seconds, title)

    # -- ads ------------------------------------------------------------------

    def request_preroll_ad(self, session_id: str, channel_id: str) -> Optional[AdResponse]:
        return self.ad_engine.get_preroll_ad(
            session_id, str(channel_id), self._channel_name(channel_id)
        )

    def request_midroll_ad_outcome(
        self, session_id: str, channel_id: str, position: float, last_ad_position: float = 0
    ) -> Outcome[Optional[AdResponse]]:
        """Midroll needs both the ad-break boundary and the engine's time gate."""
        if not self.sessions.should_show_ad(position, last_ad_position):
            return Degraded(reason="no ad break at this position", value=None)
        return self.ad_engine.get_midroll_ad_outcome(
            session_id, str(channel_id), position, self._channel_name(channel_id)
        )

    def request_midroll_ad(
        self, session_id: str, channel_id: str, position: float, last_ad_position: float = 0
    ) -> Optional[AdResponse]:
        return self.request_midroll_ad_outcome(
            session_id, channel_id, position, last_ad_position
        ).value

    def report_ad_completion(
        self, session_id: str, ad_id: str, duration: float, skipped: bool = False
    ) -> bool:
        return self.ad_engine.track_ad_played(session_id, ad_id, duration, skipped)
