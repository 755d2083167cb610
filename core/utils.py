import json
from datetime import datetime
from typing import Any

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    """Current instant as a naive UTC datetime, microsecond precision."""
    return datetime.utcnow()


def format_timestamp(value: datetime) -> str:
    """
    Render a naive UTC datetime in the one format used for hashing.
    Changing this breaks verification of every stored hash.
    """
    return value.strftime(TIMESTAMP_FORMAT)


def canonical_json(obj: Any) -> str:
    """
    Deterministic JSON: sorted keys, no whitespace, UTF-8 kept as-is.
    Non-JSON values (datetimes, UUIDs, enums) are stringified.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def normalize_details(details: Any) -> Any:
    """Round-trip through canonical JSON so the stored value equals the hashed value."""
    if details is None:
        return {}
    return json.loads(canonical_json(details))


def parse_timestamp(value: str) -> datetime:
    """Inverse of ``format_timestamp``."""
    return datetime.strptime(value, TIMESTAMP_FORMAT)
