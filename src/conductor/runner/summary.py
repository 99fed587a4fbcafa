"""Derive structured summaries from tool output."""

from __future__ import annotations

import re
from typing import Any

_RECAP_HEADER = re.compile(r"^PLAY RECAP\b.*$", re.MULTILINE)
_RECAP_HOST = re.compile(r"^(?P<host>\S+)\s*:\s*(?P<counters>(?:\w+=\d+[ \t]*)+)$", re.MULTILINE)
_COUNTER = re.compile(r"(\w+)=(\d+)")

_PLAN = re.compile(
    r"^Plan: (?P<add>\d+) to add, (?P<change>\d+) to change, (?P<destroy>\d+) to destroy",
    re.MULTILINE,
)
_NO_CHANGES = re.compile(r"^No changes\.", re.MULTILINE)
_APPLY = re.compile(
    r"^Apply complete! Resources: (?P<added>\d+) added, "
    r"(?P<changed>\d+) changed, (?P<destroyed>\d+) destroyed",
    re.MULTILINE,
)


def parse_play_recap(output: str) -> dict[str, Any]:
    """Per-host counters from the last ``PLAY RECAP`` block.

    Returns ``{}`` when the output contains no recap.
    """
    headers = list(_RECAP_HEADER.finditer(output))
    if not headers:
        return {}
    recap = output[headers[-1].end():]
    hosts: dict[str, dict[str, int]] = {}
    for match in _RECAP_HOST.finditer(recap):
        hosts[match["host"]] = {
            key: int(value) for key, value in _COUNTER.findall(match["counters"])
        }
    if not hosts:
        return {}
    return {
        "hosts": hosts,
        "failed": any(c.get("failed", 0) or c.get("unreachable", 0) for c in hosts.values()),
    }


def parse_plan(output: str) -> dict[str, Any]:
    match = _PLAN.search(output)
    if match:
        return {
            "plan": match.group(0),
            "add": int(match["add"]),
            "change": int(match["change"]),
            "destroy": int(match["destroy"]),
        }
    if _NO_CHANGES.search(output):
        return {"plan": "No changes", "add": 0, "change": 0, "destroy": 0}
    return {}


def parse_apply(output: str) -> dict[str, Any]:
    match = _APPLY.search(output)
    if not match:
        return {}
    return {
        "applied": match.group(0),
        "added": int(match["added"]),
        "changed": int(match["changed"]),
        "destroyed": int(match["destroyed"]),
    }


__all__ = ["parse_apply", "parse_plan", "parse_play_recap"]
