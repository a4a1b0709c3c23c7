from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

_SLASHES_RE = re.compile(r"/{2,}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def sanitize_label(raw: str, *, max_len: int = 63) -> str:
    """Normalize user-controlled identifiers into stable lowercase labels."""
    value = str(raw).strip().lower()
    if not value:
        return ""

    value = value.replace("_", "-").replace(" ", "-")
    value = re.sub(r"[^a-z0-9-]", "-", value)
    value = re.sub(r"-{2,}", "-", value)
    value = value.strip("-")
    if max_len <= 0:
        return value
    return value[:max_len]


def normalize_path(raw: str, fallback: str = "/") -> str:
    """Leading slash, collapsed slashes, no trailing slash (except root)."""
    value = raw.strip() or fallback
    if not value.startswith("/"):
        value = "/" + value
    value = _SLASHES_RE.sub("/", value)
    if len(value) > 1:
        value = value.rstrip("/")
    return value


def path_has_prefix(path: str, prefix: str) -> bool:
    """Prefix match on whole path segments: /api/users owns /api/users/1 but not /api/usersx."""
    if prefix == "/":
        return True
    if not path.startswith(prefix):
        return False
    return len(path) == len(prefix) or path[len(prefix)] == "/"
