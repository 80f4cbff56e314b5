"""
auth/scopes.py -- Capability scope strings.

A capability scope is a templated string of the form "resource-{param}:verb-{param}",
e.g. "user-{userId}:read-session-*". Templates are resolved twice:

  At issuance: the default grant templates below are resolved against the
      identity id, so a token for identity 7 carries "user-7:*".
  At request time: the transport layer resolves the route's required
      template against the path parameters before asking scope_satisfied().

Granted scopes may contain "*" wildcards (fnmatch semantics); the required
capability is always concrete once resolved.

Layer rule: stdlib only.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from fnmatch import fnmatchcase

# Capabilities every identity holds over its own resources.
DEFAULT_GRANTS: tuple[str, ...] = ("user-{userId}:*",)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def resolve_scope(template: str, params: Mapping[str, object]) -> str:
    """Substitute {name} placeholders from params.

    Raises KeyError if the template names a parameter that is not supplied --
    an unresolved placeholder must never reach the comparison, where it could
    only fail closed by accident.
    """

    def _sub(match: re.Match) -> str:
        return str(params[match.group(1)])

    return _PLACEHOLDER.sub(_sub, template)


def identity_scopes(identity_id: int, templates: Iterable[str] = DEFAULT_GRANTS) -> list[str]:
    """Resolve grant templates for an identity at token issuance time."""
    return [resolve_scope(t, {"userId": identity_id}) for t in templates]


def scope_satisfied(granted: Iterable[str], required: str) -> bool:
    """Return True if any granted scope matches the resolved required capability."""
    return any(fnmatchcase(required, scope) for scope in granted)
