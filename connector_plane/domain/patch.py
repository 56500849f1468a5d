from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Final, TypeAlias


class _Unset(Enum):
    UNSET = "UNSET"

    def __repr__(self) -> str:
        return "UNSET"


# Marks a patch field that was not supplied. Distinct from None, which on
# connector_overrides means "remove this override".
UNSET: Final = _Unset.UNSET
Unset: TypeAlias = _Unset


def is_set(value: object) -> bool:
    return value is not UNSET


@dataclass(frozen=True)
class OverridePatch:
    is_enabled: bool | Unset = UNSET
    max_retrying: int | Unset = UNSET
    max_due_now: int | Unset = UNSET
    min_limit: int | Unset = UNSET

    def present_fields(self) -> tuple[str, ...]:
        return tuple(item.name for item in fields(self) if is_set(getattr(self, item.name)))

    def merged_with(self, newer: OverridePatch) -> OverridePatch:
        updates = {name: getattr(newer, name) for name in newer.present_fields()}
        return replace(self, **updates)


@dataclass(frozen=True)
class PolicyPatch:
    """Sparse backpressure policy update; only present fields overwrite."""

    is_enabled: bool | Unset = UNSET
    max_retrying: int | Unset = UNSET
    max_due_now: int | Unset = UNSET
    min_limit: int | Unset = UNSET
    connector_overrides: Mapping[str, OverridePatch | None] | Unset = UNSET

    def present_fields(self) -> tuple[str, ...]:
        return tuple(item.name for item in fields(self) if is_set(getattr(self, item.name)))

    def is_empty(self) -> bool:
        return not self.present_fields()

    def merged_with(self, newer: PolicyPatch) -> PolicyPatch:
        """Amend this patch with the fields present on `newer`."""
        updates: dict[str, object] = {}
        for name in newer.present_fields():
            if name != "connector_overrides":
                updates[name] = getattr(newer, name)
                continue
            current = dict(self.connector_overrides) if is_set(self.connector_overrides) else {}
            for connector_type, override in dict(newer.connector_overrides).items():  # type: ignore[arg-type]
                existing = current.get(connector_type)
                if override is None or existing is None:
                    current[connector_type] = override
                else:
                    current[connector_type] = existing.merged_with(override)
            updates[name] = current
        return replace(self, **updates)

    def to_json(self) -> dict[str, object]:
        payload: dict[str, object] = {}
        for name in self.present_fields():
            value = getattr(self, name)
            if name == "connector_overrides":
                payload[name] = {
                    connector_type: None
                    if override is None
                    else {field_name: getattr(override, field_name) for field_name in override.present_fields()}
                    for connector_type, override in value.items()
                }
            else:
                payload[name] = value
        return payload


def policy_patch_from_json(data: Mapping[str, object]) -> PolicyPatch:
    """Inverse of PolicyPatch.to_json; absent keys stay UNSET."""
    scalar_names = ("is_enabled", "max_retrying", "max_due_now", "min_limit")
    unknown = sorted(set(data) - {*scalar_names, "connector_overrides"})
    if unknown:
        raise ValueError(f"unknown policy fields: {', '.join(unknown)}")
    values: dict[str, object] = {name: data[name] for name in scalar_names if name in data}
    if "connector_overrides" in data:
        raw_overrides = data["connector_overrides"]
        if not isinstance(raw_overrides, Mapping):
            raise ValueError("connector_overrides must be an object")
        overrides: dict[str, OverridePatch | None] = {}
        for connector_type, raw_override in raw_overrides.items():
            if raw_override is None:
                overrides[str(connector_type)] = None
                continue
            if not isinstance(raw_override, Mapping):
                raise ValueError(f"connector override for '{connector_type}' must be an object")
            unknown = sorted(set(raw_override) - set(scalar_names))
            if unknown:
                raise ValueError(f"unknown override fields for '{connector_type}': {', '.join(unknown)}")
            overrides[str(connector_type)] = OverridePatch(
                **{name: raw_override[name] for name in scalar_names if name in raw_override}
            )
        values["connector_overrides"] = overrides
    return PolicyPatch(**values)  # type: ignore[arg-type]
