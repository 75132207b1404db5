import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)

DEFAULT_BOOTSTRAP_TOKEN = ""


class ConfigurationInvalid(ValueError):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    verbose: bool = Field(default=False)

    github_webhook_secret: str | None = Field(default=None)
    github_token: str | None = Field(default=None)
    github_api_url: str = Field(default="https://api.github.com")
    github_enterprise_hostname: str | None = Field(default=None)
    github_webhook_host: str = Field(default="0.0.0.0")
    github_webhook_port: int = Field(default=3000, ge=1)

    orchard_binary: str = Field(default="orchard")
    orchard_url: str = Field(default="https://localhost:6120")
    orchard_bootstrap_admin_token: str | None = Field(default=None)
    orchard_supported_images: str = Field(default="ghcr.io/cirruslabs/*")
    orchard_data_dir: str | None = Field(default=None)
    orchard_cert_path: str | None = Field(default=None)
    orchard_cert_key_path: str | None = Field(default=None)

    run_orchard_controller: bool = Field(default=False)
    run_orchard_worker: bool = Field(default=False)
    disable_auto_trust: bool = Field(default=False)

    controller_boot_grace_sec: float = Field(default=1.0, ge=0)
    controller_ready_attempts: int = Field(default=30, ge=1)
    controller_ready_interval_sec: float = Field(default=1.0, ge=0)

    retry_attempts: int = Field(default=3, ge=1)
    retry_sleep_sec: int = Field(default=2, ge=0)

    shutdown_drain_sec: float = Field(default=30.0, ge=0)

    skip_orchard_bootstrap: bool = Field(default=False)

    @property
    def supported_images(self) -> list[str]:
        return [x.strip() for x in self.orchard_supported_images.split(",") if x.strip()]

    @property
    def auto_trust_cert(self) -> bool:
        return not self.disable_auto_trust

    @property
    def api_base_url(self) -> str:
        if self.github_enterprise_hostname:
            return f"https://{self.github_enterprise_hostname}/api/v3"
        return self.github_api_url.rstrip("/")

    def validate_orchard(self) -> None:
        if not self.supported_images:
            raise ConfigurationInvalid("No supported images specified")

        if self.run_orchard_worker and not self.run_orchard_controller:
            raise ConfigurationInvalid(
                "Orchard workers cannot be run without also running the controller"
            )

        for label, path in (
            ("certificate", self.orchard_cert_path),
            ("certificate key", self.orchard_cert_key_path),
        ):
            if path and not Path(path).exists():
                raise ConfigurationInvalid(
                    f"Orchard {label} file was specified but not found at: {path}"
                )
        if self.orchard_cert_path and not self.orchard_cert_key_path:
            raise ConfigurationInvalid(
                "ORCHARD_CERT_KEY_PATH is required when ORCHARD_CERT_PATH is specified"
            )
        if self.orchard_cert_key_path and not self.orchard_cert_path:
            raise ConfigurationInvalid(
                "ORCHARD_CERT_PATH is required when ORCHARD_CERT_KEY_PATH is specified"
            )

        if not self.orchard_bootstrap_admin_token:
            if not (self.run_orchard_controller and self.run_orchard_worker):
                raise ConfigurationInvalid(
                    "Required environment variable is not defined: ORCHARD_BOOTSTRAP_ADMIN_TOKEN"
                )
            # Only safe when this process owns both the controller and every worker.
            self.orchard_bootstrap_admin_token = DEFAULT_BOOTSTRAP_TOKEN
            logger.info("using the default empty orchard bootstrap admin token")


def env_file_path() -> str:
    return os.environ.get("ENV_FILE_PATH", ".env")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings(_env_file=env_file_path())
    settings.validate_orchard()
    return settings
