"""Global state management for workspace_ssh."""

from workspace_ssh.config.settings import Settings
from workspace_ssh.dependencies import Dependencies

# Global state (initialized on first access)
_settings: Settings | None = None
_dependencies: Dependencies | None = None


def get_settings() -> Settings:
    """Get or create settings."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def get_dependencies() -> Dependencies:
    """Get or create the dependency container."""
    global _dependencies
    if _dependencies is None:
        _dependencies = Dependencies.create(get_settings())
    return _dependencies


def reset_state() -> None:
    """Reset global state for testing.

    Clears the singleton instances without closing them; callers that
    created dependencies are responsible for cleanup().
    """
    global _settings, _dependencies
    _settings = None
    _dependencies = None


def set_settings(settings: Settings) -> None:
    """Set the global settings instance.

    Args:
        settings: Settings instance to use globally.
    """
    global _settings
    _settings = settings


def set_dependencies(dependencies: Dependencies) -> None:
    """Set the global dependency container.

    Allows the server lifespan and tests to inject a container.

    Args:
        dependencies: Dependencies instance to use globally.
    """
    global _dependencies
    _dependencies = dependencies
