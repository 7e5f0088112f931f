"""Podcast Hotline - play the latest podcast episodes over the telephone.

This package is the decision core behind a dial-in podcast line:
- Resolve a channel's newest episode from its RSS/Atom feed
- Strip tracking redirectors from audio URLs and validate what remains
- Cache episode audio on disk with latest/temporary retention
- Decide preroll/midroll ads per call, honoring exemptions
- Remember each caller's position, speed and weather zipcode

Programmatic API Example:
    >>> import podcast_hotline
    >>>
    >>> cfg = podcast_hotline.Config(
    ...     channels={"1": {"name": "Daily News", "rss": "https://example.com/feed.xml"}},
    ... )
    >>> hotline = podcast_hotline.Hotline.from_config(cfg)
    >>> hotline.start_call("CA123", "+1 555 010 2030")
    >>> instruction = hotline.select_channel("CA123", "1")

Service Mode (for cron/systemd):
    $ python -m podcast_hotline.service --config config.yaml
"""

from __future__ import annotations

from .config import Config, load_config_file
from .hotline import Hotline, PlaybackInstruction
from .url_cleaner import clean_audio_url

__all__ = [
    "Config",
    "Hotline",
    "PlaybackInstruction",
    "clean_audio_url",
    "load_config_file",
    "__version__",
    "__api_version__",
]
# Note: 'service' is available via __getattr__ for lazy loading
__version__ = "2.0.0"

# API version follows semantic versioning and is tied to module version
__api_version__ = __version__

# Cache for lazy-loaded modules to prevent circular imports
_import_cache: dict[str, object] = {}


def __getattr__(name: str):
    if name in _import_cache:
        return _import_cache[name]

    if name == "service":
        import importlib

        _service = importlib.import_module(f"{__name__}.service")
        _import_cache[name] = _service
        return _service
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
