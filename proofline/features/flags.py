"""
Toggleable engine behaviors.

Alarm derivation, legacy adaptive detection and two API surfaces can be
switched off per deployment with ``FEATURE_*`` environment variables.
"""

from enum import Enum
from typing import Dict
from pydantic_settings import BaseSettings, SettingsConfigDict


class Feature(str, Enum):
    """Named switches; each value maps to a ``feature_<value>`` setting."""

    # Alarm derivation
    OVERNIGHT_SPLIT_ALARMS = "overnight_split_alarms"
    ADAPTIVE_CHECK_ALARMS = "adaptive_check_alarms"
    MISSED_ALARM_DETECTION = "missed_alarm_detection"

    # Old timelines without explicit adaptive markers
    LEGACY_ADAPTIVE_DETECTION = "legacy_adaptive_detection"

    # HTTP surfaces
    RECALIBRATION_PREVIEW = "recalibration_preview"
    BAKE_ANALYTICS = "bake_analytics"


DEFAULT_FEATURE_STATES: Dict[Feature, bool] = {
    Feature.OVERNIGHT_SPLIT_ALARMS: True,
    Feature.ADAPTIVE_CHECK_ALARMS: True,
    Feature.MISSED_ALARM_DETECTION: True,
    # Keyword matching on step names is opt-in
    Feature.LEGACY_ADAPTIVE_DETECTION: False,
    Feature.RECALIBRATION_PREVIEW: True,
    Feature.BAKE_ANALYTICS: True,
}


class FeatureFlags(BaseSettings):
    """
    Current switch positions.

    Read from the environment (or ``.env``), for example::

        FEATURE_OVERNIGHT_SPLIT_ALARMS=false
        FEATURE_LEGACY_ADAPTIVE_DETECTION=true
    """

    feature_overnight_split_alarms: bool = DEFAULT_FEATURE_STATES[Feature.OVERNIGHT_SPLIT_ALARMS]
    feature_adaptive_check_alarms: bool = DEFAULT_FEATURE_STATES[Feature.ADAPTIVE_CHECK_ALARMS]
    feature_missed_alarm_detection: bool = DEFAULT_FEATURE_STATES[Feature.MISSED_ALARM_DETECTION]
    feature_legacy_adaptive_detection: bool = DEFAULT_FEATURE_STATES[
        Feature.LEGACY_ADAPTIVE_DETECTION
    ]
    feature_recalibration_preview: bool = DEFAULT_FEATURE_STATES[Feature.RECALIBRATION_PREVIEW]
    feature_bake_analytics: bool = DEFAULT_FEATURE_STATES[Feature.BAKE_ANALYTICS]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        # The same .env carries the application settings
        extra="ignore",
    )

    def get_flag(self, feature: Feature) -> bool:
        """Whether ``feature`` is switched on."""
        return getattr(self, f"feature_{feature.value}", DEFAULT_FEATURE_STATES.get(feature, False))

    def get_all_flags(self) -> Dict[str, bool]:
        return {feature.value: self.get_flag(feature) for feature in Feature}


def get_feature_flags(**overrides) -> FeatureFlags:
    """
    Build a FeatureFlags from the environment plus keyword overrides.

    Tests use this to flip single switches, e.g.
    ``get_feature_flags(feature_bake_analytics=False)``.
    """
    return FeatureFlags(**overrides)


feature_flags = get_feature_flags()
