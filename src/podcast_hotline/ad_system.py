"""Ad decisions for calls: inventory, exemptions, session gating and selection.

Each call gets an in-memory ad session when it starts. Preroll and midroll
requests run through a chain of gates (exemption, midroll interval, per-call
maximum, frequency trial); a passing request draws from the custom ad pool
first and falls back to the external provider. An unavailable ad is never an
error: the call simply continues to content.
"""

from __future__ import annotations

import bisect
import itertools
import json
import logging
import random
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional, Protocol, Tuple

import requests
from pydantic import BaseModel, ConfigDict, Field, field_validator, ValidationError

from . import config_constants, downloader
from .exceptions import AdProviderError, ConfigurationError
from .models import AdPlayEvent, AdSessionState, AdType, Degraded, ExemptionEntry, Ok, Outcome
from .storage import JsonStateFile

logger = logging.getLogger(__name__)

CUSTOM_PROVIDER_NAME = "custom"
PROVIDER_TARGET_DEMOGRAPHIC = "podcast_listeners"
DEFAULT_SESSION_STRIPES = 16


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


class _InventoryModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class AdDefinition(_InventoryModel):
    """An ad in the custom pool, or one returned by the external provider."""

    id: str
    name: str = ""
    audio_url: str = Field(alias="audioUrl")
    duration: Optional[float] = None
    sponsor: Optional[str] = None
    revenue: float = 0.0
    weight: Optional[float] = None
    active: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value) if value is not None else value

    @field_validator("weight", mode="after")
    @classmethod
    def _validate_weight(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value < 0:
            raise ValueError("ad weight must be non-negative")
        return value

    @field_validator("revenue", mode="before")
    @classmethod
    def _default_revenue(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @property
    def effective_weight(self) -> float:
        return config_constants.DEFAULT_AD_WEIGHT if self.weight is None else self.weight


class FrequencySettings(_InventoryModel):
    """Percentage chance (0-100) that a preroll/midroll request shows an ad."""

    preroll: float = 0.0
    midroll: float = 0.0

    @field_validator("preroll", "midroll", mode="after")
    @classmethod
    def _validate_percentage(cls, value: float) -> float:
        if not 0 <= value <= 100:
            raise ValueError("frequency must be a percentage between 0 and 100")
        return value

    def chance(self, ad_type: AdType) -> float:
        return self.preroll if ad_type == "preroll" else self.midroll


class ProviderSettings(_InventoryModel):
    """One entry of ``providers``; ``custom`` carries only ``frequency``."""

    enabled: bool = False
    frequency: Optional[FrequencySettings] = None
    api_url: Optional[str] = Field(default=None, alias="apiUrl")
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    preroll_enabled: bool = Field(default=False, alias="prerollEnabled")
    midroll_enabled: bool = Field(default=False, alias="midrollEnabled")

    def enabled_for(self, ad_type: AdType) -> bool:
        type_enabled = self.preroll_enabled if ad_type == "preroll" else self.midroll_enabled
        return self.enabled and type_enabled


class CustomAdPools(_InventoryModel):
    preroll: List[AdDefinition] = Field(default_factory=list)
    midroll: List[AdDefinition] = Field(default_factory=list)

    def active(self, ad_type: AdType) -> List[AdDefinition]:
        pool = self.preroll if ad_type == "preroll" else self.midroll
        return [ad for ad in pool if ad.active]


class AdSettings(_InventoryModel):
    midroll_interval_minutes: float = Field(
        default=config_constants.DEFAULT_MIDROLL_INTERVAL_MINUTES, alias="midrollIntervalMinutes"
    )
    max_ads_per_session: int = Field(
        default=config_constants.DEFAULT_MAX_ADS_PER_SESSION, alias="maxAdsPerSession"
    )
    skip_ad_after_seconds: Optional[float] = Field(
        default=config_constants.DEFAULT_SKIP_AD_AFTER_SECONDS, alias="skipAdAfterSeconds"
    )
    ad_volume_adjustment: float = Field(
        default=config_constants.DEFAULT_AD_VOLUME_ADJUSTMENT, alias="adVolumeAdjustment"
    )

    @field_validator("midroll_interval_minutes", "max_ads_per_session", mode="after")
    @classmethod
    def _validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must be non-negative")
        return value


class AdConfig(_InventoryModel):
    """Ad inventory as stored in ``ad-config.json``."""

    providers: Dict[str, ProviderSettings] = Field(default_factory=dict)
    custom_ads: CustomAdPools = Field(default_factory=CustomAdPools, alias="customAds")
    settings: AdSettings = Field(default_factory=AdSettings)

    @property
    def frequency(self) -> FrequencySettings:
        custom = self.providers.get(CUSTOM_PROVIDER_NAME)
        if custom is None or custom.frequency is None:
            return FrequencySettings()
        return custom.frequency

    def external_provider(self) -> Optional[Tuple[str, ProviderSettings]]:
        """First enabled external provider with an endpoint, if any."""
        for name, settings in self.providers.items():
            if name != CUSTOM_PROVIDER_NAME and settings.enabled and settings.api_url:
                return name, settings
        return None

    @property
    def midroll_interval_seconds(self) -> float:
        return self.settings.midroll_interval_minutes * 60


def parse_ad_config(data: Any) -> AdConfig:
    """Validate an ad inventory document.

    Raises:
        ConfigurationError: naming the first offending key
    """
    try:
        return AdConfig.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        key = ".".join(str(part) for part in first["loc"]) or None
        raise ConfigurationError(
            f"Invalid ad configuration: {first['msg']}", config_key=key
        ) from exc


def load_ad_config(path: str | Path) -> AdConfig:
    """Load the ad inventory; a missing or invalid file yields an empty inventory."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        config = parse_ad_config(data)
    except FileNotFoundError:
        logger.error("Ad configuration %s not found; running without ads", path)
        return AdConfig()
    except (OSError, json.JSONDecodeError, ConfigurationError) as exc:
        logger.error(f"Failed to load ad configuration {path}: {exc}")
        return AdConfig()
    logger.info(
        "Ad configuration loaded: %s preroll, %s midroll custom ads",
        len(config.custom_ads.active("preroll")),
        len(config.custom_ads.active("midroll")),
    )
    return config


# ---------------------------------------------------------------------------
# Exemptions
# ---------------------------------------------------------------------------


def normalize_phone_number(number: Optional[str]) -> str:
    """Digits only, without a leading US country code."""
    if not number:
        return ""
    digits = "".join(ch for ch in str(number) if ch.isdigit())
    return digits[1:] if digits.startswith("1") else digits


def _empty_exemptions() -> Dict[str, Any]:
    return {"exemptNumbers": [], "metadata": {"totalExemptions": 0, "lastUpdated": None}}


class ExemptionList:
    """Caller numbers that never hear inserted ads.

    Backed by ``ad-exempt-numbers.json`` when ``path`` is given, otherwise held
    in memory only.
    """

    def __init__(
        self,
        path: Optional[str | Path] = None,
        entries: Optional[List[ExemptionEntry]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._state = JsonStateFile(path, _empty_exemptions) if path is not None else None
        self._lock = threading.RLock()
        if entries is not None:
            self._set_entries(list(entries))
        elif self._state is not None:
            raw = self._state.load().get("exemptNumbers") or []
            self._set_entries([ExemptionEntry.from_dict(item) for item in raw if isinstance(item, dict)])
        else:
            self._set_entries([])

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def entries(self) -> List[ExemptionEntry]:
        with self._lock:
            return list(self._entries)

    def is_exempt(self, phone_number: Optional[str]) -> bool:
        normalized = normalize_phone_number(phone_number)
        if not normalized:
            return False
        with self._lock:
            return normalized in self._normalized

    def _today(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).date().isoformat()

    def _set_entries(self, entries: List[ExemptionEntry]) -> None:
        self._entries = entries
        self._normalized = {normalize_phone_number(e.number) for e in entries}

    @contextmanager
    def _editing(self) -> Iterator[None]:
        """Hold the lock for an edit, re-reading the file first and saving after."""
        with self._lock:
            if self._state is None:
                yield
                return
            with self._state.transaction() as data:
                raw = data.get("exemptNumbers") or []
                self._set_entries(
                    [ExemptionEntry.from_dict(item) for item in raw if isinstance(item, dict)]
                )
                before = list(self._entries)
                yield
                if self._entries == before:
                    return
                data["exemptNumbers"] = [entry.to_dict() for entry in self._entries]
                data["metadata"] = {
                    "totalExemptions": len(self._entries),
                    "lastUpdated": self._today(),
                }

    def add(self, phone_number: str, reason: str, notes: str = "") -> bool:
        """Add an exemption; returns False if the number is already exempt."""
        normalized = normalize_phone_number(phone_number)
        with self._editing():
            if normalized in self._normalized:
                logger.info("%s already exempt", phone_number)
                return False
            self._set_entries(
                self._entries
                + [ExemptionEntry(number=phone_number, reason=reason, exempt_since=self._today(), notes=notes)]
            )
        logger.info("Added %s to ad exemption list", phone_number)
        return True

    def remove(self, phone_number: str) -> bool:
        normalized = normalize_phone_number(phone_number)
        with self._editing():
            if normalized not in self._normalized:
                logger.info("%s was not in exemption list", phone_number)
                return False
            self._set_entries(
                [e for e in self._entries if normalize_phone_number(e.number) != normalized]
            )
        logger.info("Removed %s from ad exemption list", phone_number)
        return True


# ---------------------------------------------------------------------------
# External provider
# ---------------------------------------------------------------------------


class AdProviderClient:
    """Requests a single ad from an external ad network over HTTP."""

    def __init__(
        self,
        name: str,
        settings: ProviderSettings,
        api_key: Optional[str] = None,
        timeout: float = config_constants.DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    ) -> None:
        self.name = name
        self.settings = settings
        self.api_key = api_key or settings.api_key
        self.timeout = timeout

    def supports(self, ad_type: AdType) -> bool:
        return bool(self.settings.api_url) and self.settings.enabled_for(ad_type)

    def request_ad(
        self, ad_type: AdType, channel_id: str, channel_name: Optional[str] = None
    ) -> Optional[AdDefinition]:
        """Ask the provider for an ad; None when it has nothing to offer.

        Raises:
            AdProviderError: on transport failures, error statuses or malformed bodies
        """
        payload = {
            "adType": ad_type,
            "channelId": channel_id,
            "channelName": channel_name,
            "targetDemographic": PROVIDER_TARGET_DEMOGRAPHIC,
            "maxDuration": config_constants.DEFAULT_AD_MAX_DURATION_SECONDS,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key or ''}",
            "Content-Type": "application/json",
        }
        logger.info("Requesting %s ad from %s for channel %s", ad_type, self.name, channel_id)
        try:
            resp = downloader.http_post_json(
                str(self.settings.api_url), payload, headers=headers, timeout=self.timeout
            )
            try:
                body = resp.json()
            finally:
                resp.close()
        except requests.RequestException as exc:
            raise AdProviderError(f"Ad request failed: {exc}", provider=self.name) from exc
        except ValueError as exc:
            raise AdProviderError(f"Ad response is not JSON: {exc}", provider=self.name) from exc

        raw_ad = body.get("ad") if isinstance(body, dict) else None
        if not raw_ad:
            return None
        try:
            ad = AdDefinition.model_validate(
                {
                    "id": raw_ad.get("id"),
                    "name": raw_ad.get("name", ""),
                    "audioUrl": raw_ad.get("audioUrl"),
                    "duration": raw_ad.get("duration"),
                    "sponsor": raw_ad.get("advertiser"),
                    "revenue": raw_ad.get("payout") or 0,
                    "active": True,
                }
            )
        except (AttributeError, ValidationError) as exc:
            raise AdProviderError(f"Malformed ad in provider response: {exc}", provider=self.name) from exc
        logger.info("Provider ad received: %s", ad.name)
        return ad


def build_provider_client(
    ad_config: AdConfig,
    api_key: Optional[str] = None,
    timeout: float = config_constants.DEFAULT_PROVIDER_TIMEOUT_SECONDS,
) -> Optional[AdProviderClient]:
    found = ad_config.external_provider()
    if found is None:
        return None
    name, settings = found
    return AdProviderClient(name, settings, api_key=api_key, timeout=timeout)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class AdSessionStore(Protocol):
    """Keyed store of active ad sessions."""

    def get(self, session_id: str) -> Optional[AdSessionState]: ...

    def upsert(self, session_id: str, state: AdSessionState) -> None: ...

    def delete(self, session_id: str) -> Optional[AdSessionState]: ...

    def items(self) -> List[Tuple[str, AdSessionState]]: ...

    def lock_for(self, session_id: str) -> ContextManager[Any]: ...


class InMemoryAdSessionStore:
    """Sessions split across independently locked stripes.

    Sessions on different stripes never contend; ``lock_for`` returns the
    stripe lock guarding a session's state.
    """

    def __init__(self, stripes: int = DEFAULT_SESSION_STRIPES) -> None:
        self._stripes: List[Tuple[Dict[str, AdSessionState], threading.RLock]] = [
            ({}, threading.RLock()) for _ in range(max(1, stripes))
        ]

    def _stripe(self, session_id: str) -> Tuple[Dict[str, AdSessionState], threading.RLock]:
        return self._stripes[hash(session_id) % len(self._stripes)]

    def lock_for(self, session_id: str) -> ContextManager[Any]:
        return self._stripe(session_id)[1]

    def get(self, session_id: str) -> Optional[AdSessionState]:
        sessions, lock = self._stripe(session_id)
        with lock:
            return sessions.get(session_id)

    def upsert(self, session_id: str, state: AdSessionState) -> None:
        sessions, lock = self._stripe(session_id)
        with lock:
            sessions[session_id] = state

    def delete(self, session_id: str) -> Optional[AdSessionState]:
        sessions, lock = self._stripe(session_id)
        with lock:
            return sessions.pop(session_id, None)

    def items(self) -> List[Tuple[str, AdSessionState]]:
        pairs: List[Tuple[str, AdSessionState]] = []
        for sessions, lock in self._stripes:
            with lock:
                pairs.extend(sessions.items())
        return pairs

    def __len__(self) -> int:
        return len(self.items())


@dataclass
class AdResponse:
    """An ad the call-handling layer should play now."""

    id: str
    name: str
    type: AdType
    audio_url: str
    duration: float
    sponsor: Optional[str]
    revenue: float
    skip_after: Optional[float]
    volume_adjustment: float


@dataclass
class SessionSummary:
    """Ad accounting for one call."""

    session_id: str
    phone_number: str
    is_exempt: bool
    total_ads_played: int
    total_revenue: float
    ads_played: List[AdPlayEvent] = field(default_factory=list)
    duration_seconds: float = 0.0


def select_weighted_ad(ads: List[AdDefinition], rng: random.Random) -> Optional[AdDefinition]:
    """Pick an ad with probability proportional to its weight.

    A draw landing exactly on a boundary selects the earlier ad; a draw past the
    end of the pool selects the first ad.
    """
    if not ads:
        return None
    cumulative = list(itertools.accumulate(ad.effective_weight for ad in ads))
    draw = rng.random() * cumulative[-1]
    index = bisect.bisect_left(cumulative, draw)
    if index >= len(ads):
        return ads[0]
    return ads[index]


class AdEngine:
    """Per-call ad decisions."""

    def __init__(
        self,
        ad_config: Optional[AdConfig] = None,
        exemptions: Optional[ExemptionList] = None,
        session_store: Optional[AdSessionStore] = None,
        provider: Optional[AdProviderClient] = None,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ad_config = ad_config if ad_config is not None else AdConfig()
        self.exemptions = exemptions if exemptions is not None else ExemptionList()
        self.sessions: AdSessionStore = (
            session_store if session_store is not None else InMemoryAdSessionStore()
        )
        self.provider = provider
        self._rng = rng or random.Random()
        self._rng_lock = threading.Lock()
        self._clock = clock

    def _random(self) -> float:
        with self._rng_lock:
            return self._rng.random()

    def init_session(self, session_id: str, phone_number: str) -> bool:
        """Open the ad session of a call; returns True when ads are enabled for it."""
        is_exempt = self.exemptions.is_exempt(phone_number)
        now = self._clock()
        self.sessions.upsert(
            session_id,
            AdSessionState(
                phone_number=normalize_phone_number(phone_number),
                is_exempt=is_exempt,
                session_start_time=now,
                last_activity=now,
            ),
        )
        logger.info("Ad session initialized for %s - exempt: %s", phone_number, is_exempt)
        return not is_exempt

    # -- selection ------------------------------------------------------------

    def _passes_frequency(self, ad_type: AdType) -> bool:
        chance = self.ad_config.frequency.chance(ad_type)
        if self._random() * 100 > chance:
            logger.info("Skipping %s (%s%% chance)", ad_type, chance)
            return False
        return True

    def _find_ad(
        self, ad_type: AdType, channel_id: str, channel_name: Optional[str]
    ) -> Optional[AdDefinition]:
        pool = self.ad_config.custom_ads.active(ad_type)
        with self._rng_lock:
            custom = select_weighted_ad(pool, self._rng)
        if custom is not None:
            logger.info("Selected custom %s ad: %s", ad_type, custom.name)
            return custom

        if self.provider is None or not self.provider.supports(ad_type):
            return None
        try:
            return self.provider.request_ad(ad_type, channel_id, channel_name)
        except AdProviderError as exc:
            logger.warning(f"Provider {ad_type} ad unavailable: {exc}")
            return None

    def _midroll_blocked(self, session: AdSessionState, now: float) -> Optional[str]:
        """Reason the session may not take a midroll right now, or None. Caller holds its lock."""
        if (
            session.last_midroll_time is not None
            and now - session.last_midroll_time < self.ad_config.midroll_interval_seconds
        ):
            return "midroll interval not reached"
        if session.total_ads_played >= self.ad_config.settings.max_ads_per_session:
            return "max ads per session reached"
        return None

    def _record(self, session_id: str, ad: AdDefinition, ad_type: AdType) -> Outcome[Optional[AdResponse]]:
        """Append the play event and build the response.

        Midroll gates are checked again under the session lock, so concurrent
        requests that both passed them before selection cannot overshoot.
        """
        now = self._clock()
        with self.sessions.lock_for(session_id):
            session = self.sessions.get(session_id)
            if session is None:
                return Degraded(reason="session ended during ad selection", value=None)
            if ad_type == "midroll":
                blocked = self._midroll_blocked(session, now)
                if blocked is not None:
                    return Degraded(reason=blocked, value=None)
            session.total_ads_played += 1
            session.ads_played.append(
                AdPlayEvent(id=ad.id, name=ad.name, type=ad_type, timestamp=now, revenue=ad.revenue)
            )
            session.last_activity = now
            if ad_type == "midroll":
                session.last_midroll_time = now
        settings = self.ad_config.settings
        return Ok(
            AdResponse(
                id=ad.id,
                name=ad.name,
                type=ad_type,
                audio_url=ad.audio_url,
                duration=ad.duration or config_constants.DEFAULT_AD_DURATION_SECONDS,
                sponsor=ad.sponsor,
                revenue=ad.revenue,
                skip_after=settings.skip_ad_after_seconds,
                volume_adjustment=settings.ad_volume_adjustment,
            )
        )

    def _active_session(self, session_id: str) -> Outcome[Optional[AdSessionState]]:
        session = self.sessions.get(session_id)
        if session is None:
            return Degraded(reason="no active ad session", value=None)
        if session.is_exempt:
            return Degraded(reason="caller is exempt from ads", value=None)
        session.last_activity = self._clock()
        return Ok(session)

    def get_preroll_ad_outcome(
        self, session_id: str, channel_id: str, channel_name: Optional[str] = None
    ) -> Outcome[Optional[AdResponse]]:
        found = self._active_session(session_id)
        if not found.ok:
            return Degraded(reason=found.reason, value=None)
        if not self._passes_frequency("preroll"):
            return Degraded(reason="frequency trial skipped preroll", value=None)

        ad = self._find_ad("preroll", channel_id, channel_name)
        if ad is None:
            logger.info("No preroll ad available")
            return Degraded(reason="no preroll ad available", value=None)
        return self._record(session_id, ad, "preroll")

    def get_preroll_ad(
        self, session_id: str, channel_id: str, channel_name: Optional[str] = None
    ) -> Optional[AdResponse]:
        return self.get_preroll_ad_outcome(session_id, channel_id, channel_name).value

    def get_midroll_ad_outcome(
        self,
        session_id: str,
        channel_id: str,
        current_position: Optional[float] = None,
        channel_name: Optional[str] = None,
    ) -> Outcome[Optional[AdResponse]]:
        found = self._active_session(session_id)
        if not found.ok:
            return Degraded(reason=found.reason, value=None)
        session = found.value
        with self.sessions.lock_for(session_id):
            blocked = self._midroll_blocked(session, self._clock())
        if blocked is not None:
            logger.debug("No midroll for session %s: %s", session_id, blocked)
            return Degraded(reason=blocked, value=None)
        if not self._passes_frequency("midroll"):
            return Degraded(reason="frequency trial skipped midroll", value=None)

        ad = self._find_ad("midroll", channel_id, channel_name)
        if ad is None:
            logger.info("No midroll ad available")
            return Degraded(reason="no midroll ad available", value=None)
        recorded = self._record(session_id, ad, "midroll")
        if recorded.ok:
            logger.debug("Midroll at position %s for session %s", current_position, session_id)
        return recorded

    def get_midroll_ad(
        self,
        session_id: str,
        channel_id: str,
        current_position: Optional[float] = None,
        channel_name: Optional[str] = None,
    ) -> Optional[AdResponse]:
        return self.get_midroll_ad_outcome(
            session_id, channel_id, current_position, channel_name
        ).value

    # -- accounting -----------------------------------------------------------

    def track_ad_played(
        self, session_id: str, ad_id: str, playback_duration: float, skipped: bool = False
    ) -> bool:
        """Fill in completion fields of the most recent play of ``ad_id``.

        A repeated report overwrites the previous one. Returns False when the
        session or the play event no longer exists.
        """
        with self.sessions.lock_for(session_id):
            session = self.sessions.get(session_id)
            if session is None:
                return False
            event = next((e for e in reversed(session.ads_played) if e.id == ad_id), None)
            if event is None:
                return False
            event.playback_duration = playback_duration
            event.skipped = skipped
            event.completed_at = self._clock()
            session.last_activity = event.completed_at
        logger.info(
            "Ad tracking: %s - %ss %s",
            event.name,
            playback_duration,
            "(skipped)" if skipped else "(completed)",
        )
        return True

    def _summarize(self, session_id: str, session: AdSessionState) -> SessionSummary:
        return SessionSummary(
            session_id=session_id,
            phone_number=session.phone_number,
            is_exempt=session.is_exempt,
            total_ads_played=session.total_ads_played,
            total_revenue=session.total_revenue,
            ads_played=list(session.ads_played),
            duration_seconds=max(0.0, self._clock() - session.session_start_time),
        )

    def get_session_ad_stats(self, session_id: str) -> Optional[SessionSummary]:
        with self.sessions.lock_for(session_id):
            session = self.sessions.get(session_id)
            return self._summarize(session_id, session) if session else None

    def end_session(self, session_id: str) -> Optional[SessionSummary]:
        """Close the ad session of a call and return its final accounting."""
        with self.sessions.lock_for(session_id):
            session = self.sessions.delete(session_id)
            if session is None:
                return None
            summary = self._summarize(session_id, session)
        logger.info(
            "Ad session ended: %s ads, $%.2f revenue",
            summary.total_ads_played,
            summary.total_revenue,
        )
        return summary

    def reap_idle_sessions(
        self, max_idle_seconds: float = config_constants.DEFAULT_IDLE_SESSION_TIMEOUT_SECONDS
    ) -> List[SessionSummary]:
        """End sessions of calls that never signalled hang-up."""
        cutoff = self._clock() - max_idle_seconds
        reaped = []
        for session_id, session in self.sessions.items():
            if session.last_activity < cutoff:
                summary = self.end_session(session_id)
                if summary is not None:
                    reaped.append(summary)
        if reaped:
            logger.info("Reaped %s idle ad sessions", len(reaped))
        return reaped

    def get_system_stats(self) -> Dict[str, Any]:
        custom_ads = self.ad_config.custom_ads
        return {
            "active_sessions": len(self.sessions.items()),
            "total_exemptions": len(self.exemptions),
            "custom_ads_active": {
                "preroll": len(custom_ads.active("preroll")),
                "midroll": len(custom_ads.active("midroll")),
            },
            "providers_enabled": sum(
                1 for settings in self.ad_config.providers.values() if settings.enabled
            ),
        }
