"""Per-caller playback memory, persisted across calls.

Records are keyed by the last 10 digits of the caller's number and hold the
episode position, preferred playback speed and weather zipcode. Positions go
stale after ``session_ttl_days``; the zipcode keeps its own, longer window.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from . import config_constants
from .models import CallerSessionRecord
from .storage import JsonStateFile

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
SESSION_KEY_DIGITS = 10
ACTIVE_WINDOW_SECONDS = SECONDS_PER_DAY


@dataclass
class ResumePrompt:
    prompt: str
    session: CallerSessionRecord


@dataclass
class ZipcodePrompt:
    prompt: str
    zipcode: str


def format_position(position_seconds: int) -> str:
    """Spoken form of a position, e.g. ``12 minutes and 5 seconds``."""
    minutes, seconds = divmod(int(position_seconds), 60)
    if seconds > 0:
        return f"{minutes} minutes and {seconds} seconds"
    return f"{minutes} minutes"


class CallerSessionStore:
    """Caller playback records backed by ``caller_sessions.json``.

    Every operation re-reads the file under a file lock and persists changes
    immediately, so a call handler and the maintenance job can share it.
    ``start_cleanup_thread`` runs the periodic stale-record sweep in a daemon thread.
    """

    def __init__(
        self,
        sessions_file: str | Path,
        *,
        default_playback_speed: float = config_constants.DEFAULT_PLAYBACK_SPEED,
        session_ttl_days: float = config_constants.DEFAULT_SESSION_TTL_DAYS,
        zipcode_ttl_days: float = config_constants.DEFAULT_ZIPCODE_TTL_DAYS,
        resume_threshold_seconds: int = config_constants.DEFAULT_RESUME_THRESHOLD_SECONDS,
        ad_break_interval_seconds: int = config_constants.DEFAULT_AD_BREAK_INTERVAL_SECONDS,
        sweep_interval_seconds: float = config_constants.DEFAULT_SESSION_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.default_playback_speed = default_playback_speed
        self.session_ttl_seconds = session_ttl_days * SECONDS_PER_DAY
        self.zipcode_ttl_seconds = zipcode_ttl_days * SECONDS_PER_DAY
        self.resume_threshold_seconds = resume_threshold_seconds
        self.ad_break_interval_seconds = ad_break_interval_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock

        self._state = JsonStateFile(sessions_file, dict)

        self._cleanup_stop = threading.Event()
        self._cleanup_thread: Optional[threading.Thread] = None

    # -- helpers ----------------------------------------------------------

    @staticmethod
    def get_session_key(phone_number: str) -> str:
        digits = "".join(ch for ch in str(phone_number) if ch.isdigit())
        return digits[-SESSION_KEY_DIGITS:]

    @contextmanager
    def _sessions(self) -> Iterator[Dict[str, CallerSessionRecord]]:
        """Yield every record, writing back whatever the block changed."""
        with self._state.transaction() as data:
            sessions: Dict[str, CallerSessionRecord] = {}
            for key, raw in data.items():
                try:
                    sessions[key] = CallerSessionRecord.from_dict(raw, self.default_playback_speed)
                except (AttributeError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed caller session %s: %s", key, exc)
            yield sessions
            data.clear()
            data.update({key: record.to_dict() for key, record in sessions.items()})

    def _is_stale(self, record: CallerSessionRecord, now: float) -> bool:
        return now - record.last_updated > self.session_ttl_seconds

    def _zipcode_fresh(self, record: CallerSessionRecord, now: float) -> bool:
        if not record.weather_zipcode:
            return False
        updated = record.zipcode_updated if record.zipcode_updated is not None else record.last_updated
        return now - updated <= self.zipcode_ttl_seconds

    def _expire(
        self, sessions: Dict[str, CallerSessionRecord], key: str, record: CallerSessionRecord, now: float
    ) -> bool:
        """Drop stale playback state; the record survives only for a fresh zipcode.

        Returns True if anything changed.
        """
        if not self._is_stale(record, now):
            return False
        if self._zipcode_fresh(record, now):
            if not record.has_position:
                return False
            sessions[key] = CallerSessionRecord(
                phone_number=record.phone_number,
                last_updated=record.last_updated,
                playback_speed=record.playback_speed,
                weather_zipcode=record.weather_zipcode,
                zipcode_updated=record.zipcode_updated,
            )
        else:
            del sessions[key]
        return True

    # -- positions ----------------------------------------------------------

    def update_position(
        self,
        phone_number: str,
        channel_id: str,
        episode_url: str,
        position_seconds: int,
        episode_title: Optional[str] = None,
    ) -> CallerSessionRecord:
        """Store where the caller is in an episode, keeping their preferences."""
        key = self.get_session_key(phone_number)
        with self._sessions() as sessions:
            previous = sessions.get(key)
            record = CallerSessionRecord(
                phone_number=phone_number,
                last_updated=self._clock(),
                playback_speed=previous.playback_speed if previous else self.default_playback_speed,
                channel_id=str(channel_id),
                episode_url=episode_url,
                episode_title=episode_title,
                position_seconds=int(position_seconds),
                weather_zipcode=previous.weather_zipcode if previous else None,
                zipcode_updated=previous.zipcode_updated if previous else None,
            )
            sessions[key] = record
        logger.info(
            'Updated position for %s: %s in "%s"',
            phone_number,
            format_position(position_seconds),
            episode_title,
        )
        return record

    def get_last_position(self, phone_number: str) -> Optional[CallerSessionRecord]:
        """Return the caller's playback record, or None if absent or stale.

        A stale record is purged as a side effect.
        """
        key = self.get_session_key(phone_number)
        with self._sessions() as sessions:
            record = sessions.get(key)
            if record is None:
                return None
            if self._expire(sessions, key, record, self._clock()):
                logger.info("Purged stale session for %s", phone_number)
                return None
            return record if record.has_position else None

    def has_resumable_session(self, phone_number: str) -> bool:
        record = self.get_last_position(phone_number)
        return record is not None and record.position_seconds > self.resume_threshold_seconds

    def generate_resume_prompt(self, phone_number: str) -> Optional[ResumePrompt]:
        record = self.get_last_position(phone_number)
        if record is None:
            return None
        prompt = (
            f'Welcome back! You were listening to "{record.episode_title}" at '
            f"{format_position(record.position_seconds)}. "
            "Press 1 to resume, or 2 to start over."
        )
        return ResumePrompt(prompt=prompt, session=record)

    def clear_session(self, phone_number: str) -> bool:
        key = self.get_session_key(phone_number)
        with self._sessions() as sessions:
            if sessions.pop(key, None) is None:
                return False
        logger.info("Cleared session for %s", phone_number)
        return True

    # -- preferences --------------------------------------------------------

    def update_playback_speed(self, phone_number: str, speed: float) -> None:
        """Remember the caller's speed; creates a record for first-time callers."""
        if speed <= 0:
            raise ValueError(f"Playback speed must be positive, got {speed}")
        key = self.get_session_key(phone_number)
        with self._sessions() as sessions:
            record = sessions.get(key)
            if record is None:
                sessions[key] = CallerSessionRecord(
                    phone_number=phone_number,
                    last_updated=self._clock(),
                    playback_speed=speed,
                )
            else:
                record.playback_speed = speed
        logger.info("Updated playback speed for %s: %sx", phone_number, speed)

    def get_playback_speed(self, phone_number: str) -> float:
        with self._sessions() as sessions:
            record = sessions.get(self.get_session_key(phone_number))
            if record is None or not record.playback_speed:
                return self.default_playback_speed
            return record.playback_speed

    def update_zipcode(self, phone_number: str, zipcode: str) -> None:
        key = self.get_session_key(phone_number)
        now = self._clock()
        with self._sessions() as sessions:
            record = sessions.get(key)
            if record is None:
                record = CallerSessionRecord(
                    phone_number=phone_number,
                    last_updated=now,
                    playback_speed=self.default_playback_speed,
                )
                sessions[key] = record
            record.weather_zipcode = zipcode
            record.zipcode_updated = now
        logger.info("Updated zipcode for %s: %s", phone_number, zipcode)

    def get_saved_zipcode(self, phone_number: str) -> Optional[str]:
        with self._sessions() as sessions:
            record = sessions.get(self.get_session_key(phone_number))
            if record is None or not self._zipcode_fresh(record, self._clock()):
                return None
            return record.weather_zipcode

    def has_saved_zipcode(self, phone_number: str) -> bool:
        return self.get_saved_zipcode(phone_number) is not None

    def generate_zipcode_prompt(self, phone_number: str) -> Optional[ZipcodePrompt]:
        zipcode = self.get_saved_zipcode(phone_number)
        if not zipcode:
            return None
        spoken = " ".join(zipcode)
        prompt = (
            f"Welcome back! I remember your zipcode is {spoken}. "
            "Press 1 to use this zipcode, or 2 to enter a different one."
        )
        return ZipcodePrompt(prompt=prompt, zipcode=zipcode)

    # -- maintenance --------------------------------------------------------

    def cleanup_old_sessions(self) -> int:
        """Sweep every stale record; returns how many were purged."""
        now = self._clock()
        with self._sessions() as sessions:
            purged = sum(
                1
                for key, record in list(sessions.items())
                if self._expire(sessions, key, record, now)
            )
        if purged:
            logger.info("Cleaned up %s old caller sessions", purged)
        return purged

    def _cleanup_loop(self) -> None:
        while not self._cleanup_stop.wait(self.sweep_interval_seconds):
            try:
                self.cleanup_old_sessions()
            except Exception as exc:
                logger.error(f"Caller session sweep failed: {exc}", exc_info=True)

    def start_cleanup_thread(self) -> bool:
        """Start the periodic sweep; returns False if it is already running."""
        if self._cleanup_thread is not None and self._cleanup_thread.is_alive():
            return False
        self._cleanup_stop.clear()
        self._cleanup_thread = threading.Thread(
            target=self._cleanup_loop, name="caller-session-sweep", daemon=True
        )
        self._cleanup_thread.start()
        logger.debug("Started caller session sweep every %ss", self.sweep_interval_seconds)
        return True

    def stop_cleanup_thread(self, timeout: Optional[float] = None) -> None:
        self._cleanup_stop.set()
        thread, self._cleanup_thread = self._cleanup_thread, None
        if thread is not None:
            thread.join(timeout)

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._sessions() as sessions:
            records = list(sessions.values())
        with_position = [r for r in records if r.has_position]
        speeds = Counter(f"{r.playback_speed:g}x" for r in records)
        return {
            "total_sessions": len(records),
            "active_sessions": sum(1 for r in records if now - r.last_updated < ACTIVE_WINDOW_SECONDS),
            "average_position": (
                round(sum(r.position_seconds for r in with_position) / len(with_position))
                if with_position
                else 0
            ),
            "saved_zipcodes": sum(1 for r in records if self._zipcode_fresh(r, now)),
            "speed_preferences": dict(speeds),
        }

    # -- ad breaks ------------------------------------------------------------

    def get_ad_break_positions(self, episode_duration_seconds: float) -> List[int]:
        """Midroll positions every ``ad_break_interval_seconds``, strictly inside the episode."""
        interval = self.ad_break_interval_seconds
        positions: List[int] = []
        if interval <= 0:
            return positions
        position = interval
        while position < episode_duration_seconds:
            positions.append(position)
            position += interval
        return positions

    def should_show_ad(self, current_position: float, last_ad_position: float = 0) -> bool:
        """True once playback reaches the first ad-break boundary after ``last_ad_position``."""
        interval = self.ad_break_interval_seconds
        if interval <= 0:
            return False
        next_ad_position = (int(last_ad_position) // interval + 1) * interval
        return current_position >= next_ad_position
