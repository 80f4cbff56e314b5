"""
auth/pwned.py -- Breached-password check against the HaveIBeenPwned range API.

k-anonymity: only the first 5 hex chars of the password's SHA-1 are sent; the
API returns every suffix in that bucket and the match happens locally. The
password itself never leaves the process.

Fail-open: a network error or non-200 response is logged and treated as "not
pwned". Registration and password reset must not become unavailable because
a third-party API is.

Enabled by Settings.pwned_check_enabled (off by default).
"""

from __future__ import annotations

import hashlib
import logging

import requests

logger = logging.getLogger("latchkey.auth.pwned")

PWNED_RANGE_API = "https://api.pwnedpasswords.com/range/{prefix}"

# Module-level session shared across calls for connection pooling.
_session = requests.Session()
_session.max_redirects = 3


def is_pwned_password(password: str, timeout: float = 5.0) -> bool:
    """Return True if the password appears in the breach corpus."""
    digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()  # noqa: S324 -- API contract, not storage
    prefix, suffix = digest[:5], digest[5:]
    try:
        resp = _session.get(
            PWNED_RANGE_API.format(prefix=prefix),
            headers={"Add-Padding": "true"},
            timeout=timeout,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Pwned-password lookup failed: %s", e)
        return False
    for line in resp.text.splitlines():
        candidate, _, count = line.strip().partition(":")
        if candidate == suffix and count.strip() not in ("", "0"):
            return True
    return False
