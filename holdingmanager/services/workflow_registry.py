"""
Workflow Configuration Registry.

Immutable per-type definitions of ordered approval steps. Definitions are
built and validated once when the app starts (``init_app``) and stored in
``app.extensions["workflow_registry"]``; nothing mutates them afterwards.

By default the built-in DEFAULT_WORKFLOW_DEFINITIONS are used. Setting
WORKFLOW_DEFINITIONS_PATH to a JSON file replaces them; the file has the
same shape as DEFAULT_WORKFLOW_DEFINITIONS.

Usage:
    from holdingmanager.services.workflow_registry import get_registry

    definition = get_registry().definition_for("conge")
    definition.step(1).required_role   # "responsable"
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from flask import current_app

from holdingmanager.core.exceptions import UnknownWorkflowTypeError
from holdingmanager.services.permission import ROLE_LEVELS

logger = logging.getLogger(__name__)

_PREFIX_RE = re.compile(r"^[A-Z]{2,6}$")

DEFAULT_WORKFLOW_DEFINITIONS = {
    "achat": {
        "name": "Demande d'achat",
        "description": "Approval of a purchase",
        "prefix": "ACH",
        "requires_amount": True,
        "required_fields": ["fournisseur", "justification"],
        "steps": [
            {"ordinal": 1, "name": "Validation Chef Service", "required_role": "chef_service"},
            {"ordinal": 2, "name": "Validation Direction", "required_role": "directeur"},
        ],
    },
    "conge": {
        "name": "Demande de congé",
        "description": "Leave or absence request",
        "prefix": "CON",
        "requires_amount": False,
        "required_fields": ["date_debut", "date_fin", "motif"],
        "steps": [
            {"ordinal": 1, "name": "Validation Responsable", "required_role": "responsable"},
        ],
    },
    "formation": {
        "name": "Demande de formation",
        "description": "Professional training request",
        "prefix": "FOR",
        "requires_amount": True,
        "required_fields": ["formation_titre", "formation_organisme", "date_debut", "date_fin"],
        "steps": [
            {"ordinal": 1, "name": "Validation RH", "required_role": "rh"},
            {"ordinal": 2, "name": "Validation Direction", "required_role": "directeur"},
        ],
    },
    "autre": {
        "name": "Autre demande",
        "description": "General request",
        "prefix": "AUT",
        "requires_amount": False,
        "required_fields": ["justification"],
        "steps": [
            {"ordinal": 1, "name": "Validation", "required_role": "responsable"},
        ],
    },
}


@dataclass(frozen=True)
class WorkflowStep:
    ordinal: int
    required_role: str
    name: str

    def to_dict(self):
        return {"ordinal": self.ordinal, "required_role": self.required_role, "name": self.name}


@dataclass(frozen=True)
class WorkflowDefinition:
    type: str
    name: str
    description: str
    prefix: str
    requires_amount: bool
    required_fields: tuple[str, ...]
    steps: tuple[WorkflowStep, ...]

    @property
    def last_ordinal(self) -> int:
        return self.steps[-1].ordinal

    def step(self, ordinal: int) -> WorkflowStep:
        # Ordinals are contiguous from 1 (checked at load).
        if not 1 <= ordinal <= len(self.steps):
            raise ValueError(f"Workflow type {self.type!r} has no step {ordinal}")
        return self.steps[ordinal - 1]

    def is_last(self, ordinal: int) -> bool:
        return ordinal == self.last_ordinal

    def to_dict(self):
        return {
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "prefix": self.prefix,
            "requires_amount": self.requires_amount,
            "required_fields": list(self.required_fields),
            "steps": [s.to_dict() for s in self.steps],
        }


def build_definition(workflow_type: str, raw: Mapping) -> WorkflowDefinition:
    """Validate one raw definition and freeze it.

    Raises:
        ValueError: On any configuration defect (startup-time error).
    """
    prefix = raw.get("prefix", "")
    if not _PREFIX_RE.match(prefix):
        raise ValueError(f"{workflow_type}: prefix must be 2-6 uppercase letters, got {prefix!r}")

    raw_steps = sorted(raw.get("steps") or [], key=lambda s: s.get("ordinal", 0))
    if not raw_steps:
        raise ValueError(f"{workflow_type}: at least one approval step is required")

    steps = []
    for expected, s in enumerate(raw_steps, 1):
        if s.get("ordinal") != expected:
            raise ValueError(
                f"{workflow_type}: step ordinals must be contiguous from 1 "
                f"(expected {expected}, got {s.get('ordinal')})"
            )
        role = s.get("required_role")
        if role not in ROLE_LEVELS:
            raise ValueError(f"{workflow_type}: step {expected} has unknown role {role!r}")
        steps.append(WorkflowStep(ordinal=expected, required_role=role, name=s.get("name") or f"Step {expected}"))

    return WorkflowDefinition(
        type=workflow_type,
        name=raw.get("name") or workflow_type,
        description=raw.get("description", ""),
        prefix=prefix,
        requires_amount=bool(raw.get("requires_amount", False)),
        required_fields=tuple(raw.get("required_fields") or ()),
        steps=tuple(steps),
    )


class WorkflowRegistry:
    """Read-only lookup of workflow definitions by type."""

    def __init__(self, definitions: Mapping[str, WorkflowDefinition]):
        prefixes = [d.prefix for d in definitions.values()]
        if len(prefixes) != len(set(prefixes)):
            raise ValueError("Workflow prefixes must be unique across types")
        self._definitions = MappingProxyType(dict(definitions))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Mapping]) -> "WorkflowRegistry":
        return cls({t: build_definition(t, d) for t, d in raw.items()})

    @classmethod
    def from_json_file(cls, path: str) -> "WorkflowRegistry":
        with open(path, encoding="utf-8") as fh:
            return cls.from_mapping(json.load(fh))

    @classmethod
    def default(cls) -> "WorkflowRegistry":
        return cls.from_mapping(DEFAULT_WORKFLOW_DEFINITIONS)

    def definition_for(self, workflow_type: str) -> WorkflowDefinition:
        try:
            return self._definitions[workflow_type]
        except KeyError:
            raise UnknownWorkflowTypeError(workflow_type) from None

    def types(self) -> list[WorkflowDefinition]:
        return [self._definitions[t] for t in sorted(self._definitions)]

    def __contains__(self, workflow_type) -> bool:
        return workflow_type in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


def init_app(app) -> WorkflowRegistry:
    """Load the registry once and attach it to the app."""
    path = app.config.get("WORKFLOW_DEFINITIONS_PATH")
    registry = WorkflowRegistry.from_json_file(path) if path else WorkflowRegistry.default()
    app.extensions["workflow_registry"] = registry
    logger.info("Workflow registry loaded: %d types (%s)", len(registry),
                "file" if path else "built-in")
    return registry


def get_registry() -> WorkflowRegistry:
    return current_app.extensions["workflow_registry"]
