"""
Runtime configuration for the CareFlow core.

Settings are a validated pydantic model loaded from YAML once at process
start.  They tune behaviour that legitimately varies between deployments
(clinic opening hours, prescription validity, where the permission
registry lives) without touching the authorization rules themselves.

Example YAML structure::

    careflow:
      registry_path: /etc/careflow/registry.yaml
      prescription_validity_days: 180
      working_hours_start: 8
      working_hours_end: 18
      slot_duration_minutes: 20
"""

from __future__ import annotations

import functools
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from careflow.models import ShareAccessLevel


BUNDLED_REGISTRY_PATH = Path(__file__).with_name("registry.yaml")
"""The permission registry shipped with the package."""

CONFIG_ENV_VAR = "CAREFLOW_CONFIG"


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------

class CareflowSettings(BaseModel):
    """Deployment settings for the authorization and lifecycle core."""

    registry_path: Optional[Path] = Field(
        default=None,
        description=(
            "Path to a permission registry YAML file.  When unset, the "
            "registry bundled with the package is used."
        ),
    )
    prescription_validity_days: int = Field(
        default=365,
        gt=0,
        description="Days after the prescription date at which a prescription expires.",
    )
    working_hours_start: int = Field(
        default=9,
        ge=0,
        le=23,
        description="First bookable hour of the clinic day (local to the appointment timestamps).",
    )
    working_hours_end: int = Field(
        default=17,
        ge=1,
        le=24,
        description="Hour at which the clinic day ends; no slot starts at or after it.",
    )
    slot_duration_minutes: int = Field(
        default=30,
        gt=0,
        le=240,
        description="Length of an availability slot offered to schedulers.",
    )
    bypass_respects_disabled_permissions: bool = Field(
        default=True,
        description=(
            "Whether a per-user disabled permission also removes the "
            "'view/manage all' bypass it would otherwise grant in "
            "resource-level access checks."
        ),
    )
    default_share_access_level: ShareAccessLevel = Field(
        default=ShareAccessLevel.VIEW,
        description="Access level given to a document share when none is requested.",
    )

    @field_validator("working_hours_end")
    @classmethod
    def end_after_start(cls, v: int, info) -> int:
        start = info.data.get("working_hours_start")
        if start is not None and v <= start:
            raise ValueError(
                f"working_hours_end ({v}) must be > working_hours_start ({start})"
            )
        return v

    def resolved_registry_path(self) -> Path:
        return self.registry_path or BUNDLED_REGISTRY_PATH


DEFAULT_SETTINGS = CareflowSettings()
"""Built-in settings used when no configuration file is provided."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_settings_from_yaml(path: str | Path) -> CareflowSettings:
    """Load settings from a YAML file with a top-level ``careflow`` key.

    Args:
        path: Path to the YAML file.

    Returns:
        A validated ``CareflowSettings`` instance.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If a setting fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "careflow" not in raw:
        raise ValueError("YAML file must contain a top-level 'careflow' mapping.")

    section = raw["careflow"] or {}
    if not isinstance(section, dict):
        raise ValueError("'careflow' must be a mapping of settings.")

    return CareflowSettings(**section)


@functools.lru_cache(maxsize=1)
def get_settings() -> CareflowSettings:
    """Return process-wide settings.

    Reads the file named by ``CAREFLOW_CONFIG`` on first call; falls back
    to ``DEFAULT_SETTINGS``.  Cached for the life of the process.
    """
    config_path = os.environ.get(CONFIG_ENV_VAR)
    if config_path:
        return load_settings_from_yaml(config_path)
    return DEFAULT_SETTINGS
