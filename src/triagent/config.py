"""Configuration for triagent.

Settings Management:
    The module provides both global singleton and context-based settings:

    1. Global singleton (simple cases):
        set_settings(my_settings)
        settings = get_settings()

    2. Context-based (isolated contexts, tests):
        with SettingsContext(my_settings):
            settings = get_settings()  # Returns my_settings

Settings Loading Priority (highest to lowest):
    1. Constructor arguments
    2. Environment variables (TRIAGENT_* prefix, __ for nesting)
    3. Project config (./.triagent/settings.json)
    4. User config (~/.triagent/settings.json)
    5. .env file
    6. Default values
"""

from contextlib import contextmanager
from contextvars import ContextVar, Token
from pathlib import Path
from typing import Generator, Tuple, Type

from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from triagent.backends.config import BackendConfig
from triagent.settings_mixins import (
    AppSettingsMixin,
    GateSettingsMixin,
    LoggingSettingsMixin,
)

__all__ = [
    "Settings",
    "SettingsContext",
    "SettingsValidationError",
    "get_settings",
    "set_settings",
    "set_context_settings",
    "get_context_settings",
    "validate_settings",
    "reload_settings",
]

APP_NAME = "triagent"


def _get_json_config_source(
    settings_cls: Type[BaseSettings],
    json_file: Path,
) -> PydanticBaseSettingsSource | None:
    """Create a JSON config source if the file exists."""
    if not json_file.exists():
        return None
    return JsonConfigSettingsSource(settings_cls, json_file=json_file)


class Settings(GateSettingsMixin, LoggingSettingsMixin, AppSettingsMixin, BaseSettings):
    """Settings for triagent.

    Mixins provide organized settings:
    - GateSettingsMixin: Backend selection, timeouts, approval TTL, audit
    - LoggingSettingsMixin: Log level and format
    - AppSettingsMixin: Application identity and disk layout
    """

    model_config = SettingsConfigDict(
        env_prefix="TRIAGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings sources for layered JSON configuration.

        JSON sources are only included if the files exist.
        """
        sources: list[PydanticBaseSettingsSource] = [
            init_settings,
            env_settings,
        ]

        project_json = _get_json_config_source(
            settings_cls,
            Path.cwd() / f".{APP_NAME}" / "settings.json",
        )
        if project_json:
            sources.append(project_json)

        user_json = _get_json_config_source(
            settings_cls,
            Path.home() / f".{APP_NAME}" / "settings.json",
        )
        if user_json:
            sources.append(user_json)

        sources.append(dotenv_settings)

        return tuple(sources)

    @property
    def resolved_audit_dir(self) -> Path:
        """Directory for audit logs."""
        return self.audit_dir or self.workspace_dir / "audit"


# Context variable for settings (takes precedence over global singleton)
_settings_context: ContextVar[Settings | None] = ContextVar(
    "settings_context", default=None
)

# Global settings instance holder (fallback when no context)
_settings_instance: Settings | None = None


def get_settings() -> Settings:
    """Get the current settings instance.

    Settings resolution order:
    1. Context variable (set via SettingsContext or set_context_settings)
    2. Global singleton (set via set_settings)
    3. Fresh Settings instance (created on first access)
    """
    context_settings = _settings_context.get()
    if context_settings is not None:
        return context_settings

    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def set_settings(settings: Settings) -> None:
    """Set the global settings instance.

    Note: For isolated contexts (e.g., testing), prefer SettingsContext.
    """
    global _settings_instance
    _settings_instance = settings


def set_context_settings(settings: Settings | None) -> Token:
    """Set settings for the current context.

    Returns:
        Token that can be used to reset the context variable.
    """
    return _settings_context.set(settings)


def get_context_settings() -> Settings | None:
    return _settings_context.get()


@contextmanager
def SettingsContext(settings: Settings) -> Generator[Settings, None, None]:
    """Context manager for isolated settings.

    Example:
        with SettingsContext(test_settings) as s:
            gateway = build_gateway(get_settings())

    Args:
        settings: Settings to use within the context

    Yields:
        The settings instance
    """
    token = _settings_context.set(settings)
    try:
        yield settings
    finally:
        _settings_context.reset(token)


def reload_settings() -> Settings:
    """Reload settings (clears global singleton and context cache).

    Returns:
        Fresh Settings instance
    """
    global _settings_instance
    _settings_instance = None
    _settings_context.set(None)
    return get_settings()


class SettingsValidationError(Exception):
    """Raised when settings validation fails."""

    pass


def validate_settings(settings: Settings) -> None:
    """Validate settings for runtime use.

    Checks what the field types cannot: that the selected backend has
    what it needs and that the approval TTL is usable.

    Args:
        settings: Settings to validate

    Raises:
        SettingsValidationError: If validation fails
    """
    errors = []

    if settings.approval_ttl_seconds <= 0:
        errors.append(
            f"approval_ttl_seconds must be positive, got {settings.approval_ttl_seconds}"
        )

    if settings.backend_config_file and not settings.backend_config_file.exists():
        errors.append(f"Backend config file not found: {settings.backend_config_file}")

    try:
        backend_config = BackendConfig.from_settings(settings)
    except (ValueError, TypeError) as e:
        errors.append(f"Invalid backend configuration: {e}")
    else:
        if backend_config.kind == "remote" and not backend_config.remote.host:
            errors.append(
                "Remote backend requires a host. Set TRIAGENT_REMOTE_TARGET=user@host:port."
            )
        if backend_config.kind == "sandboxed" and not backend_config.sandbox.image:
            errors.append("Sandboxed backend requires an image.")

    if errors:
        raise SettingsValidationError("\n".join(errors))
