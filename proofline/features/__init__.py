"""Deployment switches for alarm derivation and optional API surfaces."""

from proofline.features.flags import Feature, FeatureFlags, get_feature_flags
from proofline.features.service import FeatureFlagService, get_feature_service, require_feature

__all__ = [
    "Feature",
    "FeatureFlags",
    "get_feature_flags",
    "FeatureFlagService",
    "get_feature_service",
    "require_feature",
]
