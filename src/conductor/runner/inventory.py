"""Render structured inventories into Ansible INI format.

A structured inventory maps group names to group definitions::

    {"webservers": {"hosts": {"web1": {"ansible_host": "10.0.0.5"}}}}

renders as::

    [webservers]
    web1 ansible_host=10.0.0.5

Every top-level group yields a section header, a group without ``hosts``
yields an empty section, and each section is followed by a blank line.
Text inventories are written verbatim.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any


def format_host_var(value: Any) -> str:
    """Render one host variable value as an INI token."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Mapping, list)):
        return json.dumps(value, separators=(",", ":"))
    text = str(value)
    if not text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _render_host(host: str, host_vars: Any) -> str:
    tokens = [str(host)]
    if host_vars is None:
        return tokens[0]
    if not isinstance(host_vars, Mapping):
        raise ValueError(f"variables for host {host!r} must be a mapping")
    for key, value in host_vars.items():
        tokens.append(f"{key}={format_host_var(value)}")
    return " ".join(tokens)


def render_inventory(inventory: Mapping[str, Any] | str) -> str:
    """Render an inventory mapping to INI text; strings pass through unchanged.

    Raises:
        ValueError: A group or host entry has the wrong shape.
    """
    if isinstance(inventory, str):
        return inventory

    lines: list[str] = []
    for group, definition in inventory.items():
        lines.append(f"[{group}]")
        if definition is not None and not isinstance(definition, Mapping):
            raise ValueError(f"group {group!r} must be a mapping")
        hosts = (definition or {}).get("hosts")
        if isinstance(hosts, Mapping):
            lines.extend(_render_host(host, host_vars) for host, host_vars in hosts.items())
        elif isinstance(hosts, list):
            lines.extend(str(host) for host in hosts)
        elif hosts is not None:
            raise ValueError(f"hosts of group {group!r} must be a mapping or a list")
        lines.append("")
    return "\n".join(lines) + "\n" if lines else ""


__all__ = ["format_host_var", "render_inventory"]
