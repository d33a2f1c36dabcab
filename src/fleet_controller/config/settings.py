# src/fleet_controller/config/settings.py
import sys
from typing import Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self
from functools import lru_cache


VALID_DEPLOYMENT_MODES = ["local-dev", "aws-mock", "aws-prod"]


def parse_instance_cap(value: Optional[str]) -> int:
    """Convert a configured cap string into an integer cap.

    An empty (or missing) value means the cap is unlimited.
    """
    if value is None or str(value).strip() == "":
        return sys.maxsize
    return int(str(value).strip())


class Settings(BaseSettings):
    """
    Single source of truth for fleet controller settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from fleet_controller.config.settings import get_settings
        settings = get_settings()
        cap = settings.instance_cap
    """

    # Application Settings
    app_name: str = Field(
        default="fleet-controller",
        description="Application name, used to tag launched instances"
    )

    # Deployment Mode
    deployment_mode: str = Field(
        default="local-dev",
        description="Deployment mode: local-dev, aws-mock, or aws-prod"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    # Capacity Configuration
    instance_cap_str: str = Field(
        default="",
        description="Global upper bound on instances; empty means unlimited"
    )

    templates_file: str = Field(
        default="templates.json",
        description="JSON file holding the node templates"
    )

    # Launch pool
    launch_workers: int = Field(
        default=8,
        ge=1,
        description="Threads in the shared launch pool"
    )

    launch_timeout_seconds: int = Field(
        default=600,
        ge=1,
        description="How long a launch task waits for the instance to run"
    )

    # Periodic driver
    initial_delay_seconds: float = Field(
        default=100.0,
        ge=0,
        description="Warm-up time before the first periodic sweep"
    )

    recurrence_period_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Interval between periodic sweeps"
    )

    # Retention
    retention_disabled: bool = Field(
        default=False,
        description="Never terminate idle nodes when set"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @property
    def instance_cap(self) -> int:
        """Global instance cap as an integer."""
        return parse_instance_cap(self.instance_cap_str)

    @field_validator('deployment_mode', mode='before')
    @classmethod
    def normalize_deployment_mode(cls, v):
        """Normalize deployment mode values for backwards compatibility."""
        if v:
            mode_mapping = {
                "local-mock": "local-dev",
                "cloud": "aws-prod",
            }
            return mode_mapping.get(v, v)
        return v

    @field_validator('deployment_mode')
    @classmethod
    def validate_deployment_mode(cls, v):
        """Validate deployment mode is one of the allowed values."""
        if v not in VALID_DEPLOYMENT_MODES:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {VALID_DEPLOYMENT_MODES}")
        return v

    @field_validator('instance_cap_str')
    @classmethod
    def validate_instance_cap(cls, v):
        """Reject caps that are neither empty nor a non-negative integer."""
        v = (v or "").strip()
        if v and (not v.isdigit()):
            raise ValueError(f"Invalid instance cap: {v!r}. Must be empty or a non-negative integer")
        return v

    @model_validator(mode="after")
    def apply_local_mode_defaults(self) -> Self:
        """Point local modes at the mock endpoint with mock credentials."""
        if self.deployment_mode in ["local-dev", "aws-mock"]:
            if self.aws_endpoint_url is None:
                self.aws_endpoint_url = "http://localhost:5000"
            if self.aws_access_key_id is None:
                self.aws_access_key_id = "mock"
            if self.aws_secret_access_key is None:
                self.aws_secret_access_key = "mock"
        return self

    def get_environment_dict(self) -> dict:
        """Get configuration as a dictionary suitable for a subprocess environment.

        Returns:
            Dictionary of environment variables
        """
        return {
            'FLEET_DEPLOYMENT_MODE': self.deployment_mode,
            'AWS_DEFAULT_REGION': self.aws_region,
            'AWS_ENDPOINT_URL': self.aws_endpoint_url or '',
            'FLEET_INSTANCE_CAP_STR': self.instance_cap_str,
            'FLEET_TEMPLATES_FILE': self.templates_file,
            'FLEET_RETENTION_DISABLED': str(self.retention_disabled).lower(),
            'FLEET_LOG_LEVEL': self.log_level,
        }

    model_config = SettingsConfigDict(
        env_prefix="FLEET_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
