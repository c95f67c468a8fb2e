"""
Feature switches as seen by route handlers.

Handlers receive a FeatureFlagService through ``Depends(get_feature_service)``
so tests can swap in one built from custom flags.
"""

from typing import Dict, List, Optional
from fastapi import Depends, HTTPException, status

from proofline.features.flags import Feature, FeatureFlags, feature_flags

# Switches that change which alarms a timeline produces
ALARM_FEATURES = (
    Feature.OVERNIGHT_SPLIT_ALARMS,
    Feature.ADAPTIVE_CHECK_ALARMS,
    Feature.MISSED_ALARM_DETECTION,
)


class FeatureFlagService:
    """Thin wrapper around FeatureFlags that turns off-switches into HTTP 503s."""

    def __init__(self, flags: Optional[FeatureFlags] = None):
        self.flags = flags if flags is not None else feature_flags

    def is_enabled(self, feature: Feature) -> bool:
        return self.flags.get_flag(feature)

    def require_feature(self, feature: Feature) -> None:
        """Raise 503 with a FEATURE_DISABLED body when ``feature`` is off."""
        if self.is_enabled(feature):
            return
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error_code": "FEATURE_DISABLED",
                "message": f"{feature.value} is turned off on this server",
                "feature": feature.value,
            },
        )

    def get_all_flags(self) -> Dict[str, bool]:
        return self.flags.get_all_flags()

    def get_disabled_alarm_features(self) -> List[str]:
        """Names of alarm features that are switched off."""
        return [feature.value for feature in ALARM_FEATURES if not self.is_enabled(feature)]


_service: Optional[FeatureFlagService] = None


def get_feature_service() -> FeatureFlagService:
    """Process-wide FeatureFlagService, created on first use."""
    global _service
    if _service is None:
        _service = FeatureFlagService()
    return _service


def require_feature(feature: Feature):
    """
    Route dependency that rejects the request while ``feature`` is off.

    Example:
        @router.post("/{bake_id}/recalibrate/preview",
                     dependencies=[Depends(require_feature(Feature.RECALIBRATION_PREVIEW))])
    """

    def _guard(service: FeatureFlagService = Depends(get_feature_service)) -> None:
        service.require_feature(feature)

    return _guard
