"""Runtime settings for gridci."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .artifacts import DEFAULT_ARTIFACT_DIR
from .images import RegistryCredentials


class Settings(BaseSettings):
    """Settings read from GRIDCI_* environment variables (and .env)."""

    workflow_name: str | None = Field(
        default=None,
        description="Override the workflow name used for concurrency groups",
    )
    max_workers: int | None = Field(
        default=None,
        gt=0,
        description="Parallel job instances (None = cpu count - 1)",
    )
    artifact_dir: Path = Field(
        default=Path(DEFAULT_ARTIFACT_DIR),
        description="Where the local artifact store writes uploads",
    )
    work_dir: Path = Field(
        default=Path(".gridci/checkouts"),
        description="Checkout directory used with --repo",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="WARNING",
        description="Diagnostic log level",
    )
    log_json: bool = Field(
        default=False,
        description="Emit diagnostic logs as JSON lines",
    )

    registry_url: str | None = Field(default=None, description="Container registry host")
    registry_username: str | None = Field(default=None)
    registry_password: SecretStr | None = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="GRIDCI_",
        env_file=".env",
        extra="ignore",
    )

    def registry_credentials(self) -> RegistryCredentials | None:
        if not (self.registry_url and self.registry_username and self.registry_password):
            return None
        return RegistryCredentials(
            registry=self.registry_url,
            username=self.registry_username,
            password=self.registry_password,
        )
