"""Custom exceptions for podcast_hotline.

Only a few failures are allowed to escape the core. Everything else degrades to
a safe default (see ``models.Ok`` / ``models.Degraded``).

Exception Hierarchy:
    HotlineError (base)
    ├── StorageError - Persisting state to disk failed
    ├── EpisodeDownloadError - Explicit episode download failed
    ├── AdProviderError - External ad provider failed (caught by the ad engine)
    └── ConfigurationError - Configuration or inventory files are invalid
"""

from typing import Optional


class HotlineError(Exception):
    """Base exception for all podcast_hotline errors.

    Attributes:
        component: Name of the failing component (e.g., "EpisodeCache")
        message: Human-readable error message
        suggestion: Optional suggestion for resolving the error
    """

    def __init__(
        self,
        message: str,
        component: str = "Unknown",
        suggestion: Optional[str] = None,
    ) -> None:
        self.component = component
        self.message = message
        self.suggestion = suggestion
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the full error message with component and suggestion."""
        parts = [f"[{self.component}] {self.message}"]
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return " ".join(parts)


class StorageError(HotlineError):
    """Raised when state cannot be written to disk.

    This is one of the two failures allowed to propagate: losing caller
    positions or cache metadata silently would corrupt later decisions.

    Example:
        >>> raise StorageError(
        ...     message="Failed to save caller_sessions.json",
        ...     path="/var/lib/hotline/caller_sessions.json",
        ...     suggestion="Check free disk space and directory permissions"
        ... )
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        component: str = "Storage",
        suggestion: Optional[str] = None,
    ) -> None:
        self.path = path
        if path and path not in message:
            message = f"{message} (path: {path})"
        super().__init__(message=message, component=component, suggestion=suggestion)


class EpisodeDownloadError(HotlineError):
    """Raised when an episode download requested by a caller fails.

    The partial file has already been removed when this is raised.
    """

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.url = url
        self.status_code = status_code
        if status_code is not None:
            message = f"{message} (HTTP {status_code})"
        super().__init__(message=message, component="EpisodeCache", suggestion=suggestion)


class AdProviderError(HotlineError):
    """Raised when the external ad provider is unreachable or returns garbage."""

    def __init__(
        self,
        message: str,
        provider: str = "external",
        suggestion: Optional[str] = None,
    ) -> None:
        self.provider = provider
        super().__init__(message=message, component=f"AdProvider/{provider}", suggestion=suggestion)


class ConfigurationError(HotlineError):
    """Raised when configuration or ad inventory files are invalid.

    Example:
        >>> raise ConfigurationError(
        ...     message="midrollIntervalMinutes must be positive",
        ...     config_key="settings.midrollIntervalMinutes",
        ... )
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.config_key = config_key
        if config_key and config_key not in message:
            message = f"{message} (config key: {config_key})"
        super().__init__(message=message, component="Config", suggestion=suggestion)
