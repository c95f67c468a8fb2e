"""
Read-only view of the deployment's feature switches.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Dict, List

from proofline.features import FeatureFlagService, get_feature_service

router = APIRouter(prefix="/api/features", tags=["features"])


class PublicFeatureFlagsResponse(BaseModel):
    """Switch positions plus the alarm kinds this server will not schedule."""

    flags: Dict[str, bool]
    disabled_alarm_features: List[str] = []

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "flags": {
                        "overnight_split_alarms": True,
                        "adaptive_check_alarms": True,
                        "missed_alarm_detection": True,
                        "legacy_adaptive_detection": False,
                        "recalibration_preview": True,
                        "bake_analytics": True,
                    },
                    "disabled_alarm_features": [],
                }
            ]
        }
    }


@router.get("", response_model=PublicFeatureFlagsResponse)
async def list_features(service: FeatureFlagService = Depends(get_feature_service)):
    """
    Report every switch. No authentication required.

    Clients use `disabled_alarm_features` to warn that some alarms will not be scheduled.
    """
    return PublicFeatureFlagsResponse(
        flags=service.get_all_flags(),
        disabled_alarm_features=service.get_disabled_alarm_features(),
    )
