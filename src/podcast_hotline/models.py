from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar, Union

T = TypeVar("T")

CacheType = Literal["latest", "temporary"]
AdType = Literal["preroll", "midroll"]


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying the produced value."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Degraded(Generic[T]):
    """Outcome of an operation that fell back to a safe default.

    ``value`` is the default handed to the caller; ``reason`` says why.
    """

    reason: str
    value: T

    @property
    def ok(self) -> bool:
        return False


Outcome = Union[Ok[T], Degraded[T]]


@dataclass
class Episode:
    """A playable episode extracted from a feed (raw, uncleaned audio URL)."""

    title: str
    audio_url: str


@dataclass
class CachedEpisodeRecord:
    """Metadata for one downloaded episode in the episode cache."""

    channel_id: str
    episode_url: str
    episode_title: str
    filename: str
    download_time: float
    type: CacheType
    file_size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedEpisodeRecord":
        return cls(
            channel_id=str(data["channel_id"]),
            episode_url=data["episode_url"],
            episode_title=data.get("episode_title", ""),
            filename=data["filename"],
            download_time=float(data["download_time"]),
            type=data.get("type", "temporary"),
            file_size=int(data.get("file_size", 0)),
        )


@dataclass
class AdPlayEvent:
    """One ad decision appended to a call's ad session.

    The completion fields are filled by ``AdEngine.track_ad_played``.
    """

    id: str
    name: str
    type: AdType
    timestamp: float
    revenue: float = 0.0
    playback_duration: Optional[float] = None
    skipped: Optional[bool] = None
    completed_at: Optional[float] = None


@dataclass
class AdSessionState:
    """Ad state of one active call. Never persisted."""

    phone_number: str
    is_exempt: bool
    session_start_time: float
    last_activity: float
    ads_played: List[AdPlayEvent] = field(default_factory=list)
    last_midroll_time: Optional[float] = None
    total_ads_played: int = 0

    @property
    def total_revenue(self) -> float:
        return sum(event.revenue or 0.0 for event in self.ads_played)


@dataclass
class ExemptionEntry:
    """A caller number that never hears inserted ads."""

    number: str
    reason: str = ""
    exempt_since: str = ""
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        # Same keys the ad administration tooling writes
        return {
            "number": self.number,
            "reason": self.reason,
            "exemptSince": self.exempt_since,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExemptionEntry":
        return cls(
            number=str(data.get("number", "")),
            reason=data.get("reason", "") or "",
            exempt_since=data.get("exemptSince", data.get("exempt_since", "")) or "",
            notes=data.get("notes", "") or "",
        )


@dataclass
class CallerSessionRecord:
    """Persisted per-caller playback state, keyed by the last 10 digits."""

    phone_number: str
    last_updated: float
    playback_speed: float
    channel_id: Optional[str] = None
    episode_url: Optional[str] = None
    episode_title: Optional[str] = None
    position_seconds: int = 0
    weather_zipcode: Optional[str] = None
    zipcode_updated: Optional[float] = None

    @property
    def has_position(self) -> bool:
        return bool(self.episode_url)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_speed: float) -> "CallerSessionRecord":
        return cls(
            phone_number=str(data.get("phone_number", "")),
            last_updated=float(data.get("last_updated", 0.0)),
            playback_speed=float(data.get("playback_speed") or default_speed),
            channel_id=data.get("channel_id"),
            episode_url=data.get("episode_url"),
            episode_title=data.get("episode_title"),
            position_seconds=int(data.get("position_seconds") or 0),
            weather_zipcode=data.get("weather_zipcode"),
            zipcode_updated=data.get("zipcode_updated"),
        )
