"""Redaction for captured network traces.

Traces keep enough to debug (header names, non-secret values, url shape) but
never store cookie/authorization/token values verbatim: those are replaced by a
length + sha256 fingerprint so two traces can still be compared.
"""

from __future__ import annotations

import hashlib
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SENSITIVE_SUBSTRINGS = (
    "token",
    "secret",
    "password",
    "passwd",
    "pwd",
    "authorization",
    "cookie",
    "session",
    "jwt",
    "bearer",
    "api-key",
    "api_key",
    "apikey",
)

# "author" and "authorship" must not match.
_SENSITIVE_EXACT = {"auth"}

MAX_BODY_CHARS = 2000


def is_sensitive_key(key: str) -> bool:
    k = (key or "").strip().lower()
    if not k:
        return False
    if k in _SENSITIVE_EXACT:
        return True
    return any(s in k for s in _SENSITIVE_SUBSTRINGS)


def _fingerprint(value: str) -> dict[str, Any]:
    out: dict[str, Any] = {"redacted": True, "len": len(value)}
    if value:
        out["sha256"] = hashlib.sha256(value.encode("utf-8", errors="replace")).hexdigest()
    return out


def redact_headers(headers: Any, *, max_keys: int = 64, max_value_len: int = 300) -> dict[str, Any]:
    """Return lowercase headers with secret values fingerprinted."""
    if not isinstance(headers, dict):
        return {}
    out: dict[str, Any] = {}
    for k, v in headers.items():
        lk = str(k or "").strip().lower()
        if not lk:
            continue
        if len(out) >= max_keys:
            break
        sv = v if isinstance(v, str) else str(v)
        if is_sensitive_key(lk):
            out[lk] = _fingerprint(sv)
        else:
            out[lk] = clamp(sv, max_value_len)
    return out


def redact_url(url: str) -> str:
    """Redact secret-looking query params and userinfo; other parts stay intact."""
    if not isinstance(url, str) or not url:
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    changed = False
    netloc = parts.netloc
    if "@" in netloc:
        netloc = netloc.split("@", 1)[1]
        changed = True
    query = _redact_pairs(parts.query)
    # OAuth implicit flows put tokens in the fragment.
    fragment = _redact_pairs(parts.fragment) if "=" in parts.fragment else parts.fragment
    if query != parts.query or fragment != parts.fragment:
        changed = True
    if not changed:
        return url
    return urlunsplit((parts.scheme, netloc, parts.path, query, fragment))


def _redact_pairs(text: str) -> str:
    if not text:
        return text
    pairs = parse_qsl(text, keep_blank_values=True)
    out_pairs = [(k, "<redacted>") if v and is_sensitive_key(k) else (k, v) for k, v in pairs]
    if out_pairs == pairs:
        return text
    return urlencode(out_pairs, doseq=True)


def clamp(value: Any, max_len: int = MAX_BODY_CHARS) -> str | None:
    if value is None:
        return None
    s = value if isinstance(value, str) else str(value)
    if len(s) <= max_len:
        return s
    return s[:max_len] + f"… <truncated len={len(s)}>"
