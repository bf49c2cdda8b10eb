from __future__ import annotations

from typing import ClassVar, final

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from content_tree.domain.tree_types import Limit, limit_from_column


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [x.strip() for x in value.split(",") if x.strip()]


@final
class Settings(BaseSettings):
    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )
    app_name: str = "Content Tree"
    api_prefix: str = "/api/v1"

    # Environment (ENVIRONMENT): development | production
    environment: str = "development"

    database_url: str = "sqlite:///./dev.db"
    log_level: str = "INFO"

    # Primary env: CORS_ALLOW_ORIGINS; also accept CORS_ORIGINS as alias.
    cors_allow_origins: str = Field(
        default="*",
        validation_alias=AliasChoices("CORS_ALLOW_ORIGINS", "CORS_ORIGINS"),
    )

    # Global depth cap on top of per-type limits; unset = unbounded.
    tree_max_depth: int | None = Field(default=None, ge=0)

    # Every tree operation is one transaction bounded by this timeout.
    tree_operation_timeout_seconds: float = Field(default=30.0, gt=0)

    # Used when the caller does not send X-Actor-Id.
    default_actor_id: str = "system"

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":  # pyright: ignore[reportUnusedFunction]
        if self.environment.strip().lower() != "production":
            return self

        errors: list[str] = []

        if self.database_url.strip().lower().startswith("sqlite"):
            errors.append("DATABASE_URL must not be SQLite in production")

        cors_v = self.cors_allow_origins.strip()
        if not cors_v or cors_v == "*":
            errors.append("CORS_ALLOW_ORIGINS must be explicit (not '*') in production")

        if errors:
            raise ValueError("Invalid production settings: " + "; ".join(errors))
        return self

    def cors_origins_list(self) -> list[str]:
        v = self.cors_allow_origins.strip()
        if not v:
            return []
        if v == "*":
            return ["*"]
        return _split_csv(v)

    def tree_depth_limit(self) -> Limit:
        return limit_from_column(self.tree_max_depth)

    def security_warnings(self) -> list[str]:
        warnings: list[str] = []
        if self.cors_allow_origins.strip() == "*":
            warnings.append("CORS_ALLOW_ORIGINS='*' is permissive")
        return warnings


settings = Settings()
