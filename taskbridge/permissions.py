"""Feature registry and per-user permission resolution.

Resolution order (first wins):
  1. the user's own ``configs["features"][feature]`` override
  2. the role default declared here
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from taskbridge.models import User

TASK_VIEW = "task_view"
TASK_COMPLETE = "task_complete"
TASK_CREATE = "task_create"

VALID_ROLES = ("superadmin", "admin", "user")


@dataclass(frozen=True, slots=True)
class Feature:
    id: str
    label: str
    default_for: tuple[str, ...]
    admin_only: bool = False


FEATURES: dict[str, Feature] = {
    f.id: f
    for f in (
        Feature(TASK_VIEW, "View my tasks", VALID_ROLES),
        Feature(TASK_COMPLETE, "Complete my tasks", VALID_ROLES),
        Feature(TASK_CREATE, "Create and assign tasks", ("admin", "superadmin")),
        Feature("history", "Chat history", ("admin", "superadmin")),
        Feature("user_manage", "Manage users", ("admin", "superadmin"), admin_only=True),
        Feature("feature_manage", "Manage feature flags", ("superadmin",), admin_only=True),
        Feature("system_config", "System configuration", ("superadmin",), admin_only=True),
    )
}


def role_has_feature(role: str, feature_id: str) -> bool:
    feature = FEATURES.get(feature_id)
    return feature is not None and role in feature.default_for


def can(user: User | None, feature_id: str) -> bool:
    """Whether `user` may use `feature_id`."""

    if user is None:
        return False
    override = user.configs.get("features", {}).get(feature_id)
    if isinstance(override, bool):
        return override
    return role_has_feature(user.role, feature_id)


def resolve_features(user: User | None) -> dict[str, bool]:
    return {feature_id: can(user, feature_id) for feature_id in FEATURES}


def validate_configs(configs: dict[str, Any] | None) -> dict[str, Any]:
    """Drop unknown feature keys and non-boolean values."""

    incoming = (configs or {}).get("features", {}) or {}
    features = {k: v for k, v in incoming.items() if k in FEATURES and isinstance(v, bool)}
    return {"features": features}
