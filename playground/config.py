from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from playground.logging import get_logger

logger = get_logger(__name__)

# Tokens and registry entries live for two weeks unless configured otherwise.
TWO_WEEKS_MINUTES = 14 * 24 * 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the playground API."""

    database_url: str = env_field(
        "postgresql://localhost:5432/playground", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="When set, the session registry and OAuth state live in Redis",
    )
    shared_fs_root: str = env_field("/srv/playground", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI; enables registered OAuth codes.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("playground", "JWT_ISSUER")
    jwt_audience: str = env_field("playground-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        TWO_WEEKS_MINUTES, "ACCESS_TOKEN_TTL_MINUTES"
    )
    session_max_age_minutes: int = env_field(
        TWO_WEEKS_MINUTES,
        "SESSION_MAX_AGE_MINUTES",
        description="Registry entries older than this are removed by the sweeper",
    )
    session_sweep_interval_seconds: int = env_field(
        3600, "SESSION_SWEEP_INTERVAL_SECONDS"
    )
    max_folder_depth: int = env_field(100, "MAX_FOLDER_DEPTH")
    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    login_redirect_url: str | None = env_field(
        None,
        "LOGIN_REDIRECT",
        description="Frontend page receiving ?access_token= after a completed login",
    )
    # Remote video provider
    google_api_key: str | None = env_field(None, "GOOGLE_API_KEY")
    drive_api_base_url: str = env_field(
        "https://www.googleapis.com/drive/v3", "DRIVE_API_BASE_URL"
    )
    drive_download_url: str = env_field(
        "https://drive.google.com/uc", "DRIVE_DOWNLOAD_URL"
    )
    video_first_chunk_mebibytes: int = env_field(16, "VIDEO_FIRST_CONTENT_LENGTH")
    video_chunk_mebibytes: int = env_field(10, "VIDEO_CONTENT_LENGTH")
    provider_timeout_seconds: float = env_field(30.0, "PROVIDER_TIMEOUT_SECONDS")
    cors_allow_origins: str = env_field(
        "",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed origins",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_is_none(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("max_folder_depth", "video_first_chunk_mebibytes", "video_chunk_mebibytes")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/playground"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup", error=str(exc), path=str(fs_root)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = secret_path.with_suffix(".tmp")
        try:
            fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                os.write(fd, generated.encode())
            finally:
                os.close(fd)
            os.replace(tmp_path, secret_path)
        except OSError as exc:
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
