"""Payload models and submission-time validation.

Each job type has a Pydantic model describing the payload fields the
runner reads. ``validate_payload()`` checks a raw payload against the
model for its type and raises ``ValidationError`` naming the offending
field, so malformed jobs are rejected before they reach the queue.
"""

from __future__ import annotations

import json
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from conductor.core.errors import ValidationError
from conductor.daemon.types import JobType
from conductor.runner.inventory import render_inventory


class PlaybookRunPayload(BaseModel):
    """Payload of a ``playbook-run`` job."""

    model_config = ConfigDict(extra="allow")

    playbook: str = Field(min_length=1, description="Playbook YAML text")
    inventory: dict[str, Any] | str = Field(
        description="Structured inventory (group -> {hosts: {host: vars}}) or INI text",
    )
    variables: dict[str, Any] = Field(
        default_factory=dict,
        description="Extra variables passed as --extra-vars @vars.yml",
    )


class TerraformPayload(BaseModel):
    """Payload of a ``plan`` or ``apply`` job."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    working_dir: str = Field(alias="workingDir", min_length=1)
    variables: dict[str, Any] = Field(default_factory=dict)


class EchoPayload(BaseModel):
    """Payload of an ``echo`` job."""

    model_config = ConfigDict(extra="allow")

    message: str


PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.PLAYBOOK_RUN: PlaybookRunPayload,
    JobType.PLAN: TerraformPayload,
    JobType.APPLY: TerraformPayload,
    JobType.ECHO: EchoPayload,
}


def validate_payload(job_type: JobType, payload: Any) -> BaseModel:
    """Parse ``payload`` into the model for ``job_type``.

    Raises:
        ValidationError: Missing or malformed fields.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a mapping")
    for key, value in payload.items():
        # Payloads are stored and handed to tools as JSON
        try:
            json.dumps(value, allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                f"Invalid {job_type.value} payload: {key}: not JSON-serializable ({exc})",
                field=str(key),
            ) from exc
    model = PAYLOAD_MODELS[job_type]
    try:
        parsed = model.model_validate(payload)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        field = str(first["loc"][0]) if first["loc"] else None
        raise ValidationError(
            f"Invalid {job_type.value} payload: {field}: {first['msg']}",
            field=field,
        ) from exc

    if isinstance(parsed, PlaybookRunPayload):
        try:
            render_inventory(parsed.inventory)
        except ValueError as exc:
            raise ValidationError(f"Invalid inventory: {exc}", field="inventory") from exc
    return parsed


__all__ = [
    "EchoPayload",
    "PAYLOAD_MODELS",
    "PlaybookRunPayload",
    "TerraformPayload",
    "validate_payload",
]
