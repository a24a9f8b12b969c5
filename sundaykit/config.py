from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sundaykit.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the provisioning service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sundaykit", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/sundaykit", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Redis for monitor leases; leases live in the credential store when unset",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets",
    )
    secret_key: str | None = env_field(
        None,
        "SECRET_KEY",
        validate_default=True,
        description="Key material for encrypting workspace secrets at rest",
    )
    internal_api_token: str | None = env_field(
        None,
        "INTERNAL_API_TOKEN",
        description="Bearer token required on /v1 routes when set",
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Cloud platform
    northflank_api_token: str | None = env_field(None, "NORTHFLANK_API_TOKEN")
    northflank_api_base: str = env_field(
        "https://api.northflank.com/v1", "NORTHFLANK_API_BASE"
    )
    northflank_template_id: str = env_field("sunday", "NORTHFLANK_TEMPLATE_ID")
    northflank_region: str = env_field("asia-southeast", "NORTHFLANK_REGION")
    northflank_timeout_seconds: float = env_field(30.0, "NORTHFLANK_TIMEOUT_SECONDS")
    webhook_url: str | None = env_field(None, "WEBHOOK_URL")
    webhook_token: str | None = env_field(None, "WEBHOOK_AUTH_TOKEN")
    template_database_url: str | None = env_field(None, "TEMPLATE_DATABASE_URL")
    google_oauth_client_id: str | None = env_field(None, "GOOGLE_OAUTH_CLIENT_ID")
    google_oauth_client_secret: str | None = env_field(
        None, "GOOGLE_OAUTH_CLIENT_SECRET"
    )

    # Provisioning loop
    provision_poll_interval_seconds: float = env_field(
        30, "PROVISION_POLL_INTERVAL_SECONDS"
    )
    provision_time_budget_seconds: float = env_field(
        15 * 60, "PROVISION_TIME_BUDGET_SECONDS"
    )
    api_key_mint_attempts: int = env_field(5, "API_KEY_MINT_ATTEMPTS")
    api_key_mint_backoff_seconds: float = env_field(15, "API_KEY_MINT_BACKOFF_SECONDS")
    api_key_mint_backoff_multiplier: float = env_field(
        2.0, "API_KEY_MINT_BACKOFF_MULTIPLIER"
    )
    api_key_mint_backoff_cap_seconds: float = env_field(
        120, "API_KEY_MINT_BACKOFF_CAP_SECONDS"
    )
    workspace_boot_grace_seconds: float = env_field(30, "WORKSPACE_BOOT_GRACE_SECONDS")
    workspace_password_prefix: str = env_field("7On", "WORKSPACE_PASSWORD_PREFIX")
    workspace_timeout_seconds: float = env_field(30.0, "WORKSPACE_TIMEOUT_SECONDS")
    auto_bootstrap_database: bool = env_field(True, "AUTO_BOOTSTRAP_DATABASE")
    addon_resume_settle_seconds: float = env_field(30, "ADDON_RESUME_SETTLE_SECONDS")
    user_data_schema: str = env_field("user_data_schema", "USER_DATA_SCHEMA")
    monitor_lease_margin_seconds: float = env_field(
        120, "MONITOR_LEASE_MARGIN_SECONDS"
    )
    resume_monitors_on_startup: bool = env_field(True, "RESUME_MONITORS_ON_STARTUP")

    # Training
    training_job_name: str = env_field("user-lora-training", "TRAINING_JOB_NAME")
    training_base_model: str = env_field(
        "TinyLlama/TinyLlama-1.1B-Chat-v1.0", "TRAINING_BASE_MODEL"
    )
    training_output_path: str = env_field("/workspace/adapters", "TRAINING_OUTPUT_PATH")
    training_poll_interval_seconds: float = env_field(
        30, "TRAINING_POLL_INTERVAL_SECONDS"
    )
    training_time_budget_seconds: float = env_field(
        30 * 60, "TRAINING_TIME_BUDGET_SECONDS"
    )
    training_max_consecutive_errors: int = env_field(
        5, "TRAINING_MAX_CONSECUTIVE_ERRORS"
    )
    training_min_total_samples: int = env_field(10, "TRAINING_MIN_TOTAL_SAMPLES")
    training_min_primary_samples: int = env_field(5, "TRAINING_MIN_PRIMARY_SAMPLES")
    training_min_quality_score: float = env_field(0.5, "TRAINING_MIN_QUALITY_SCORE")
    training_log_tail: int = env_field(500, "TRAINING_LOG_TAIL")

    # Shared services reachable from every user project
    chroma_project_id: str | None = env_field(None, "CHROMA_PROJECT_ID")
    ollama_project_id: str | None = env_field(None, "OLLAMA_PROJECT_ID")
    chroma_internal_url: str = env_field(
        "http://chroma.internal:8000", "CHROMA_INTERNAL_URL"
    )
    ollama_internal_url: str = env_field(
        "http://ollama.internal:11434", "OLLAMA_INTERNAL_URL"
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", "internal_api_token", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("secret_key")
    @classmethod
    def _ensure_secret_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so stored secrets stay readable across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sundaykit"))
        secret_path = fs_root / ".secret_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except Exception as exc:
            logger.warning(
                "secret_key_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except Exception as exc:
                logger.error(
                    "secret_key_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            # Write to a temp file then rename so readers never see a partial key
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".secret_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except Exception as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "secret_key_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist secret key; set SECRET_KEY or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    def missing_template_settings(self) -> List[str]:
        """Names of environment variables a template run cannot start without."""
        required = {
            "NORTHFLANK_API_TOKEN": self.northflank_api_token,
            "TEMPLATE_DATABASE_URL": self.template_database_url,
            "GOOGLE_OAUTH_CLIENT_ID": self.google_oauth_client_id,
            "GOOGLE_OAUTH_CLIENT_SECRET": self.google_oauth_client_secret,
        }
        return [name for name, value in required.items() if not value]


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
