"""Runtime settings for calendar sync, read from the environment."""

from __future__ import annotations

import os
from typing import List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..availability.errors import ConfigurationError

_ENV_FIELDS = {
    "token_encryption_key": "CALENDAR_TOKEN_ENCRYPTION_KEY",
    "google_client_id": "GOOGLE_CLIENT_ID",
    "google_client_secret": "GOOGLE_CLIENT_SECRET",
    "freebusy_horizon_weeks": "CALENDAR_FREEBUSY_HORIZON_WEEKS",
    "canonical_min_weeks_busy": "CALENDAR_CANONICAL_MIN_WEEKS_BUSY",
    "request_timeout_seconds": "CALENDAR_REQUEST_TIMEOUT_SECONDS",
    "token_refresh_margin_seconds": "CALENDAR_TOKEN_REFRESH_MARGIN_SECONDS",
    "calendar_ids": "CALENDAR_IDS",
    "max_parallel_syncs": "CALENDAR_MAX_PARALLEL_SYNCS",
}


class SyncSettings(BaseModel):
    token_encryption_key: Optional[str] = Field(default=None, repr=False)
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = Field(default=None, repr=False)
    freebusy_horizon_weeks: int = Field(default=8, ge=1)
    canonical_min_weeks_busy: int = Field(default=2, ge=1)
    request_timeout_seconds: float = Field(default=15.0, gt=0)
    token_refresh_margin_seconds: int = Field(default=60, ge=0)
    calendar_ids: List[str] = Field(default_factory=lambda: ["primary"])
    max_parallel_syncs: int = Field(default=4, ge=1)

    @field_validator("calendar_ids", mode="before")
    @classmethod
    def _split_calendar_ids(cls, value: object) -> object:
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",")]
        if isinstance(value, list):
            value = [item for item in value if item]
            if not value:
                raise ValueError("at least one calendar id is required")
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SyncSettings":
        env = os.environ if environ is None else environ
        values = {name: env[var] for name, var in _ENV_FIELDS.items() if env.get(var)}
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid calendar sync settings: {exc}") from exc
