from __future__ import annotations

import re
from typing import Any, Optional


_SENSOR_INTERACTIVE_RE = re.compile(r"^(https?://)([^/]+)(/sensor-interactive/.*)$")


def rewrite_url(value: str, host_domain: str) -> str:
    """Point a sensor-interactive URL at `host_domain`; other strings are returned as-is."""
    m = _SENSOR_INTERACTIVE_RE.match(value.strip())
    if not m:
        return value
    return f"{m.group(1)}{host_domain}{m.group(3)}"


def rewrite_sensor_interactive_urls(tree: Any, host_domain: str) -> Any:
    """
    Return a copy of `tree` with every sensor-interactive URL rewritten to `host_domain`.

    Walks nested dicts, lists and tuples; string leaves matching
    `scheme://host/sensor-interactive/...` get their host replaced. Numbers,
    booleans, None and other strings are kept. The input is not modified and
    must be tree-shaped (no cycles). Rewriting twice gives the same result as
    rewriting once.
    """
    if isinstance(tree, str):
        return rewrite_url(tree, host_domain)
    if isinstance(tree, dict):
        return {k: rewrite_sensor_interactive_urls(v, host_domain) for k, v in tree.items()}
    if isinstance(tree, list):
        return [rewrite_sensor_interactive_urls(v, host_domain) for v in tree]
    if isinstance(tree, tuple):
        return tuple(rewrite_sensor_interactive_urls(v, host_domain) for v in tree)
    return tree


def rewrite_state(state: Any, host_domain: Optional[str]) -> Any:
    """Rewrite URLs inside a container state; scalars and a missing domain are a no-op."""
    if not host_domain or not isinstance(state, (dict, list, tuple)):
        return state
    return rewrite_sensor_interactive_urls(state, host_domain)


__all__ = [
    "rewrite_sensor_interactive_urls",
    "rewrite_state",
    "rewrite_url",
]
