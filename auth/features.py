"""
auth/features.py -- Role -> feature table and the feature-gate predicate.

Premium features are expressed as request fields that only paying roles may
set to a non-default value. A FREE account may still send the field, as
long as it carries the default (clients often echo the whole object back).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from auth.errors import UpgradeRequired
from auth.models import Role

CUSTOM_COLOR = "custom_color"
TASK_IMAGE = "task_image"


@dataclass(frozen=True)
class GatedField:
    feature: str
    default: Any


# Request field -> the feature it needs and the value anyone may send.
GATED_FIELDS: dict[str, GatedField] = {
    "color": GatedField(CUSTOM_COLOR, "#FFFFFF"),
    "image_url": GatedField(TASK_IMAGE, None),
}

ROLE_FEATURES: dict[Role, frozenset[str]] = {
    Role.FREE: frozenset(),
    Role.PREMIUM: frozenset({CUSTOM_COLOR, TASK_IMAGE}),
    Role.ADMIN: frozenset({CUSTOM_COLOR, TASK_IMAGE}),
}


def has_feature(role: Role, feature: str) -> bool:
    return feature in ROLE_FEATURES.get(Role(role), frozenset())


def _is_default(value: Any, default: Any) -> bool:
    # Null or empty means "not set" for every gated field.
    if value is None or value == "":
        return True
    if isinstance(value, str) and isinstance(default, str):
        return value.strip().upper() == default.upper()
    return value == default


def missing_features(role: Role, payload: Mapping[str, Any], field_names: Iterable[str]) -> list[str]:
    """Features the payload uses that the role lacks, in field order, deduplicated."""
    missing: list[str] = []
    for name in field_names:
        gate = GATED_FIELDS[name]
        if name not in payload or _is_default(payload[name], gate.default):
            continue
        if not has_feature(role, gate.feature) and gate.feature not in missing:
            missing.append(gate.feature)
    return missing


def check_features(role: Role, payload: Mapping[str, Any], field_names: Iterable[str]) -> None:
    """Raise UpgradeRequired if the payload sets a gated field the role cannot use."""
    missing = missing_features(role, payload, field_names)
    if missing:
        raise UpgradeRequired(missing)
