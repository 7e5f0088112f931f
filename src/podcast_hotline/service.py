"""Maintenance entry point for running the hotline core as a scheduled job.

One run refreshes the episode cache for every configured channel and sweeps
expired state:

- preload the latest episode of each channel
- evict expired temporary episodes
- purge stale caller sessions

Idle ad sessions live in the call handler's memory and are reaped there by
``Hotline.start()``.

For cron/systemd usage:
    python -m podcast_hotline.service --config /path/to/config.yaml
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import __version__, config
from .hotline import Hotline

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class ServiceResult:
    """Result of a maintenance run.

    Attributes:
        channels_refreshed: Number of channels whose latest episode is cached
        summary: Human-readable summary message
        success: Whether the run completed successfully
        error: Error message if success is False, None otherwise
    """

    channels_refreshed: int
    summary: str
    success: bool = True
    error: Optional[str] = None


def apply_log_level(level: str, log_file: Optional[str] = None) -> None:
    """Apply logging level to root logger and configure handlers.

    Raises:
        ValueError: If log level is invalid
        OSError: If log file cannot be created or written to
    """
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")

    root_logger = logging.getLogger()

    if not root_logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(console_handler)
        root_logger.setLevel(numeric_level)
    else:
        root_logger.setLevel(numeric_level)
        for handler in root_logger.handlers:
            handler.setLevel(numeric_level)

    if log_file:
        file_handler_exists = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == os.path.abspath(log_file)
            for h in root_logger.handlers
        )
        if not file_handler_exists:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root_logger.addHandler(file_handler)
            logger.info(f"Logging to file: {log_file}")

    logger.setLevel(numeric_level)


def run(cfg: config.Config) -> ServiceResult:
    """Run one maintenance pass with the given configuration."""
    hotline: Optional[Hotline] = None
    try:
        if cfg.log_file or cfg.log_level:
            apply_log_level(level=cfg.log_level or "INFO", log_file=cfg.log_file)

        hotline = Hotline.from_config(cfg)
        preloaded = hotline.cache.preload_latest_episodes(cfg.feed_urls())
        refreshed = sum(1 for ok in preloaded.values() if ok)
        evicted = hotline.cache.evict_expired()
        purged = hotline.sessions.cleanup_old_sessions()
        stats = hotline.cache.get_cache_stats()

        summary = (
            f"Latest episodes cached for {refreshed}/{len(preloaded)} channels; "
            f"evicted {evicted} expired episodes; purged {purged} caller sessions; "
            f"cache holds {stats['total_episodes']} episodes ({stats['total_size_mb']}MB)"
        )
        logger.info(summary)
        return ServiceResult(channels_refreshed=refreshed, summary=summary)
    except Exception as e:
        error_msg = str(e)
        logger.error(f"Maintenance run failed: {error_msg}", exc_info=True)
        return ServiceResult(channels_refreshed=0, summary="", success=False, error=error_msg)
    finally:
        if hotline is not None:
            hotline.close()


def run_from_config_file(config_path: str | Path) -> ServiceResult:
    """Load a JSON/YAML config file and run one maintenance pass."""
    try:
        config_dict = config.load_config_file(str(config_path))
        cfg = config.Config(**config_dict)
    except Exception as exc:
        error_msg = f"Failed to load configuration file: {exc}"
        logger.error(error_msg)
        return ServiceResult(channels_refreshed=0, summary="", success=False, error=error_msg)

    return run(cfg)


def main() -> int:
    """Config-file-only entry point; returns the process exit code."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Podcast Hotline maintenance - refresh episode cache and sweep state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m podcast_hotline.service --config config.yaml

  # hourly via cron
  0 * * * * python -m podcast_hotline.service --config /etc/hotline/config.yaml
        """,
    )
    parser.add_argument(
        "--config",
        required=True,
        help="Path to configuration file (JSON or YAML)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"podcast_hotline {__version__}",
    )

    args = parser.parse_args()
    result = run_from_config_file(args.config)

    if result.success:
        print(result.summary)
        return 0
    print(f"Error: {result.error}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
