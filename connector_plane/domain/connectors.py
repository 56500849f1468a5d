from __future__ import annotations

from connector_plane.domain.errors import ValidationError

SUPPORTED_CONNECTOR_TYPES: tuple[str, ...] = ("webhook", "slack", "jira", "sqs", "db")

CONNECTOR_TYPE_ALIASES: dict[str, str] = {
    "slack_webhook": "slack",
    "jira_issue": "jira",
    "sink_sqs": "sqs",
    "aws_sqs": "sqs",
    "sink_db": "db",
    "database": "db",
}


def canonical_connector_type(raw_type: str) -> str | None:
    value = raw_type.strip().lower()
    mapped = CONNECTOR_TYPE_ALIASES.get(value, value)
    if mapped in SUPPORTED_CONNECTOR_TYPES:
        return mapped
    return None


def require_connector_type(raw_type: str) -> str:
    canonical = canonical_connector_type(raw_type)
    if canonical is None:
        supported = ", ".join(SUPPORTED_CONNECTOR_TYPES)
        raise ValidationError(f"Unsupported connector type '{raw_type}'. Supported types: {supported}")
    return canonical


def require_connector_types(raw_types: list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    """Canonicalise a requested connector list, defaulting to every supported type."""
    if not raw_types:
        return SUPPORTED_CONNECTOR_TYPES
    resolved: list[str] = []
    for raw_type in raw_types:
        canonical = require_connector_type(raw_type)
        if canonical not in resolved:
            resolved.append(canonical)
    return tuple(resolved)
