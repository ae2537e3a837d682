"""Settings management service"""

import os
import json
import asyncio
from typing import Dict, Any, Optional, List
from pathlib import Path
import logging
from pydantic import BaseModel, Field, field_validator, field_serializer, model_validator
from enum import Enum

from culler.api.schemas.schedules import Schedule, DailyAt, EveryHours, parse_cron, to_cron

logger = logging.getLogger(__name__)


class VelocityChangeAction(str, Enum):
    redownload = "redownload"
    alert = "alert"
    both = "both"


class RuleSettings(BaseModel):
    default_buffer_days: int = Field(15, ge=0, le=365)
    dry_run: bool = False
    collection_name: str = "Leaving Soon"
    max_concurrent_matches: int = Field(8, ge=1, le=64)


class QueueSettings(BaseModel):
    max_deletions_per_run: int = Field(50, ge=1, le=1000)
    max_concurrent_deletions: int = Field(4, ge=1, le=32)
    retention_days: int = Field(30, ge=1, le=3650)
    recheck_conditions: bool = True


class ViperSettings(BaseModel):
    enabled: bool = True

    # Eligibility
    min_days_since_watch: int = Field(15, ge=0, le=365)
    require_all_users_watched: bool = True
    active_viewer_days: int = Field(30, ge=1, le=365)
    include_specials: bool = False
    trim_ahead_enabled: bool = False
    watchlist_grace_days: int = Field(14, ge=0, le=365)

    # Movie cleanup
    movie_cleanup_enabled: bool = False
    unwatched_movie_days: int = Field(90, ge=1, le=3650)

    # Protection window
    velocity_buffer_days: int = Field(7, ge=0, le=90)
    min_episodes_ahead: int = Field(3, ge=0, le=100)
    max_episodes_ahead: int = Field(20, ge=1, le=500)
    unknown_velocity_buffer: int = Field(10, ge=0, le=500)

    # Velocity
    velocity_lookback_episodes: int = Field(5, ge=1, le=100)
    min_velocity_samples: int = Field(3, ge=1, le=100)
    default_velocity: float = Field(1.0, gt=0, le=100)

    # Re-download
    redownload_enabled: bool = True
    redownload_lead_days: float = Field(3, ge=0, le=90)
    emergency_buffer_hours: float = Field(24, ge=0, le=24 * 30)

    # Velocity change detection
    velocity_change_threshold_percent: float = Field(50, gt=0, le=1000)
    velocity_change_action: VelocityChangeAction = VelocityChangeAction.redownload
    velocity_baseline_samples: int = Field(5, ge=1, le=50)
    velocity_history_size: int = Field(50, ge=1, le=1000)

    @model_validator(mode="after")
    def check_sample_bounds(self):
        if self.min_velocity_samples > self.velocity_lookback_episodes:
            raise ValueError(
                "min_velocity_samples cannot exceed velocity_lookback_episodes; "
                "velocity would never be measured"
            )
        if self.velocity_baseline_samples > self.velocity_history_size:
            raise ValueError("velocity_baseline_samples cannot exceed velocity_history_size")
        return self


class ScheduleSettings(BaseModel):
    rules: Schedule = Field(default_factory=lambda: DailyAt(hour=2))
    queue_sweep: Schedule = Field(default_factory=lambda: EveryHours(hours=1))
    viper_cleanup: Schedule = Field(default_factory=lambda: DailyAt(hour=3))
    velocity_check: Schedule = Field(default_factory=lambda: EveryHours(hours=2))
    redownload_check: Schedule = Field(default_factory=lambda: EveryHours(hours=6))
    maintenance: Schedule = Field(default_factory=lambda: DailyAt(hour=4))
    check_interval_seconds: int = Field(30, ge=1, le=3600)

    @field_validator(
        "rules", "queue_sweep", "viper_cleanup", "velocity_check", "redownload_check", "maintenance",
        mode="before",
    )
    @classmethod
    def parse_cron_text(cls, v):
        if isinstance(v, str):
            return parse_cron(v)
        return v

    @field_serializer(
        "rules", "queue_sweep", "viper_cleanup", "velocity_check", "redownload_check", "maintenance"
    )
    def dump_cron_text(self, v):
        return to_cron(v)


class RunSettings(BaseModel):
    status_ttl_minutes: int = Field(60, ge=1, le=24 * 60)


class NotificationSettings(BaseModel):
    enabled: bool = False

    # Discord settings
    discord_enabled: bool = False
    discord_webhook_url: str = ""
    discord_username: str = "Culler"

    # Webhook settings
    webhook_enabled: bool = False
    webhook_endpoints: List[Dict[str, Any]] = Field(default_factory=list)

    # Event subscriptions
    events_queue_added: bool = False
    events_media_deleted: bool = True
    events_rule_completed: bool = True
    events_error: bool = True
    events_service_down: bool = True
    events_viper_cleanup: bool = True
    events_velocity_changed: bool = True
    events_redownload_triggered: bool = True

    dedup_window_seconds: int = Field(60, ge=0, le=3600)


class Settings(BaseModel):
    """Complete settings model"""
    rules: RuleSettings = Field(default_factory=RuleSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    viper: ViperSettings = Field(default_factory=ViperSettings)
    schedules: ScheduleSettings = Field(default_factory=ScheduleSettings)
    runs: RunSettings = Field(default_factory=RunSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)


def _env_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes", "on")


ENV_OVERRIDES = {
    "CULLER_DRY_RUN": ("rules", "dry_run", _env_bool),
    "CULLER_BUFFER_DAYS": ("rules", "default_buffer_days", int),
    "CULLER_COLLECTION_NAME": ("rules", "collection_name", str),
    "CULLER_MAX_DELETIONS_PER_RUN": ("queue", "max_deletions_per_run", int),
    "CULLER_VIPER_ENABLED": ("viper", "enabled", _env_bool),
    "CULLER_RULES_SCHEDULE": ("schedules", "rules", str),
    "CULLER_VIPER_SCHEDULE": ("schedules", "viper_cleanup", str),
}


class SettingsService:
    """Loads, validates and persists the settings document"""

    def __init__(self, settings_path: Optional[str] = None):
        self._settings_path = Path(
            settings_path or os.getenv("CULLER_SETTINGS_PATH", "/data/settings.json")
        )
        self._settings: Optional[Settings] = None
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            raise RuntimeError("Settings not loaded")
        return self._settings

    async def load_settings(self) -> Settings:
        """Load settings from disk, apply environment overrides and validate.

        A missing file yields defaults (written back to disk). A file that
        does not validate raises instead of falling back, so a typo never
        turns into unintended deletions.
        """
        async with self._lock:
            data: Dict[str, Any] = {}
            exists = self._settings_path.exists()
            if exists:
                try:
                    with open(self._settings_path) as f:
                        data = json.load(f)
                except (OSError, json.JSONDecodeError) as e:
                    logger.error(f"Failed to read settings from {self._settings_path}: {e}")
                    raise

            data = self._apply_env_overrides(data)

            try:
                self._settings = Settings(**data)
            except Exception as e:
                logger.error(f"Invalid settings in {self._settings_path}: {e}")
                raise

            if not exists:
                await self._save_settings_unlocked()

            logger.info(f"Settings loaded from {self._settings_path}")
            return self._settings

    async def update_settings(self, updates: Dict[str, Any]) -> Settings:
        """Merge a partial update section by section and persist it"""
        async with self._lock:
            current = self._settings or Settings()
            data = current.model_dump()

            for section, values in updates.items():
                if section not in data:
                    raise ValueError(f"Unknown section: {section}")
                if isinstance(values, dict):
                    data[section].update(values)

            self._settings = Settings(**data)
            await self._save_settings_unlocked()
            return self._settings

    async def reset_section(self, section: str) -> Settings:
        """Reset a specific section to defaults"""
        async with self._lock:
            current = self._settings or Settings()
            if section not in Settings.model_fields:
                raise ValueError(f"Unknown section: {section}")

            data = current.model_dump()
            data[section] = Settings.model_fields[section].default_factory().model_dump()
            self._settings = Settings(**data)
            await self._save_settings_unlocked()
            return self._settings

    async def _save_settings_unlocked(self):
        """Save settings to disk (must be called with lock held)"""
        try:
            self._settings_path.parent.mkdir(parents=True, exist_ok=True)

            # Write to temp file first (atomic write)
            temp_path = self._settings_path.with_suffix('.tmp')
            with open(temp_path, 'w') as f:
                json.dump(self._settings.model_dump(mode="json"), f, indent=2)
            temp_path.replace(self._settings_path)

            logger.info(f"Settings saved to {self._settings_path}")
        except Exception as e:
            logger.error(f"Failed to save settings: {e}")
            raise

    def _apply_env_overrides(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides before validation"""
        for env_key, (section, key, converter) in ENV_OVERRIDES.items():
            env_value = os.getenv(env_key)
            if env_value is None:
                continue
            try:
                data.setdefault(section, {})[key] = converter(env_value)
            except ValueError as e:
                logger.warning(f"Failed to convert env var {env_key}: {e}")
        return data

    def get_setting(self, path: str) -> Any:
        """Get a specific setting by dot-notation path"""
        value = self.settings.model_dump()
        for part in path.split('.'):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return None
        return value
