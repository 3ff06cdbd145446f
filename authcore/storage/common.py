"""Storage helpers shared between the memory and postgres backends."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Dict, List, Optional


# ============================================================================
# NORMALIZATION
# ============================================================================

def normalize_email(email: str) -> str:
    """Lower-case and strip an email so lookups are case-insensitive."""
    return (email or "").strip().lower()


def normalize_user_meta(meta: Optional[Dict]) -> Dict:
    return dict(meta) if meta else {}


def normalize_permissions(permissions: Any) -> List[str]:
    """Return a sorted, de-duplicated list of permission names."""
    if not permissions:
        return []
    if isinstance(permissions, str):
        permissions = [permissions]
    return sorted({str(p).strip() for p in permissions if str(p).strip()})


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Validate an IP address and return its canonical text form.

    Args:
        raw_ip: Raw IP address value (string, ip object, or None)

    Returns:
        Canonical string form, or None for empty or unparseable input
    """
    if raw_ip is None:
        return None
    stripped = str(raw_ip).strip()
    if not stripped:
        return None
    try:
        return str(ip_address(stripped))
    except ValueError:
        return None


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a metadata field from a JSON string or dict."""
    if raw_meta is None:
        return None
    if isinstance(raw_meta, dict):
        return raw_meta
    if isinstance(raw_meta, (str, bytes)):
        try:
            parsed = json.loads(raw_meta)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


# ============================================================================
# DATETIME HELPERS
# ============================================================================

def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    return ensure_utc(datetime.fromisoformat(str(raw)))


# ============================================================================
# ROW HELPERS
# ============================================================================

def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract a value from a row dict or object.

    Args:
        row: Row data (dict-like or object)
        key: Key/attribute name
        default: Default value if not found

    Returns:
        Extracted value or default
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())
