"""Desired-state construction, diffing, and dependency ordering.

This module turns a loaded stack into desired resources, diffs them against
the state file, and orders the resulting changes:

1. Creates, updates and replacements run in dependency order
   (definitions before the assignments that reference them)
2. Deletions run afterwards in reverse dependency order
   (assignments before the definitions they reference)
3. A replacement is create-before-destroy: the new resource is written in
   phase 1 and the old identifier is deleted in phase 2, after every
   dependent has been repointed

Entries are matched to state by Azure identifier as well as by address, so
renaming a stack key while keeping the resource name moves the record to
the new address instead of deleting the live resource. An identifier that
is still declared is never deleted.

The diff never consults Azure directly; the state file is the source of truth.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import MAX_MG_ASSIGNMENT_NAME_LENGTH
from .document_loader import PolicyDocumentError, Stack
from .models import (
    ScopeKind,
    assignment_id,
    definition_id,
    is_definition_id,
    scope_kind,
)
from .state import StateSnapshot

logger = logging.getLogger(__name__)

PLAN_FORMAT_VERSION = 1


class ResourceKind(str, Enum):
    """Kinds of resource the driver manages."""

    DEFINITION = "policy_definition"
    ASSIGNMENT = "policy_assignment"


# Lower ranks are created first and deleted last
KIND_RANK: dict[str, int] = {
    ResourceKind.DEFINITION.value: 0,
    ResourceKind.ASSIGNMENT.value: 1,
}


class ChangeAction(str, Enum):
    """Planned action for one resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    MOVE = "move"
    NO_OP = "no-op"


class DependencyOrderingError(Exception):
    """Raised when a reference cannot be resolved or ordered.

    Covers assignments pointing at undeclared definitions, dependency
    cycles, and (at apply time) definitions that do not exist in Azure.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors if errors is not None else [message]


def address_for(kind: ResourceKind, key: str) -> str:
    """Stable address of a stack entry, e.g. `policy_definition.allowed_location`."""
    return f"{kind.value}.{key}"


@dataclass
class DesiredResource:
    """A resource as declared, with its deterministic identifier."""

    address: str
    kind: ResourceKind
    name: str
    scope: str
    resource_id: str
    attributes: dict[str, Any]
    depends_on: list[str] = field(default_factory=list)


def _canonical(value: Any) -> Any:
    return json.loads(json.dumps(value, sort_keys=True, default=str))


def _same_id(a: str, b: str) -> bool:
    # ARM resource ids are case-insensitive
    return a.lower() == b.lower()


def build_desired_resources(stack: Stack, default_scope: str | None) -> list[DesiredResource]:
    """Resolve a stack into desired resources.

    Args:
        stack: Loaded stack with rule documents.
        default_scope: Scope used when an entry declares none.

    Returns:
        Desired resources, definitions first.

    Raises:
        PolicyDocumentError: On invalid scopes or duplicate identifiers.
        DependencyOrderingError: If an assignment references an undeclared definition.
    """
    doc_errors: list[str] = []
    dep_errors: list[str] = []
    resources: list[DesiredResource] = []
    seen_ids: dict[str, str] = {}
    definition_scopes: dict[str, tuple[str, str]] = {}

    def resolve_scope(address: str, declared: str | None) -> tuple[str, ScopeKind] | None:
        scope = declared or default_scope
        if not scope:
            doc_errors.append(f"{address}: no scope declared and ARM_SUBSCRIPTION_ID is not set")
            return None
        scope = scope.rstrip("/")
        try:
            return scope, scope_kind(scope)
        except ValueError as e:
            doc_errors.append(f"{address}: {e}")
            return None

    def claim(address: str, resource_id: str) -> None:
        key = resource_id.lower()
        if key in seen_ids:
            doc_errors.append(
                f"{address}: identifier {resource_id} is already declared by {seen_ids[key]}"
            )
        else:
            seen_ids[key] = address

    for key, spec in stack.spec.definitions.items():
        address = address_for(ResourceKind.DEFINITION, key)
        resolved = resolve_scope(address, spec.scope)
        if resolved is None:
            continue
        scope, kind = resolved
        if kind == ScopeKind.RESOURCE_GROUP:
            doc_errors.append(
                f"{address}: definitions can only be created at subscription or "
                f"management group scope, not {scope}"
            )
            continue

        resource_id = definition_id(scope, spec.name)
        claim(address, resource_id)
        definition_scopes[key] = (scope, resource_id)
        rule = stack.rules[key]
        resources.append(
            DesiredResource(
                address=address,
                kind=ResourceKind.DEFINITION,
                name=spec.name,
                scope=scope,
                resource_id=resource_id,
                attributes=_canonical({
                    "name": spec.name,
                    "displayName": spec.display_name,
                    "description": spec.description,
                    "policyType": spec.policy_type.value,
                    "mode": spec.mode,
                    "policyRule": rule.to_document(),
                    "metadata": spec.metadata,
                    "parameters": spec.parameters,
                }),
            )
        )

    for key, spec in stack.spec.assignments.items():
        address = address_for(ResourceKind.ASSIGNMENT, key)
        resolved = resolve_scope(address, spec.scope)
        if resolved is None:
            continue
        scope, kind = resolved

        if kind == ScopeKind.MANAGEMENT_GROUP and len(spec.name) > MAX_MG_ASSIGNMENT_NAME_LENGTH:
            doc_errors.append(
                f"{address}: assignment names at management group scope are limited to "
                f"{MAX_MG_ASSIGNMENT_NAME_LENGTH} characters"
            )

        depends_on: list[str] = []
        if is_definition_id(spec.definition):
            policy_definition_id = spec.definition
        elif spec.definition in definition_scopes:
            def_scope, policy_definition_id = definition_scopes[spec.definition]
            depends_on.append(address_for(ResourceKind.DEFINITION, spec.definition))
            if scope_kind(def_scope) == ScopeKind.SUBSCRIPTION and not (
                scope.lower() + "/"
            ).startswith(def_scope.lower() + "/"):
                doc_errors.append(
                    f"{address}: scope {scope} is outside the scope of its definition {def_scope}"
                )
        elif spec.definition in stack.spec.definitions:
            # Declared but its own scope was invalid; already reported
            continue
        else:
            dep_errors.append(
                f"{address}: references definition '{spec.definition}', which is not "
                "declared in the stack and is not a policy definition id"
            )
            continue

        for not_scope in spec.not_scopes:
            try:
                scope_kind(not_scope.rstrip("/"))
            except ValueError as e:
                doc_errors.append(f"{address}: notScopes: {e}")

        resource_id = assignment_id(scope, spec.name)
        claim(address, resource_id)
        resources.append(
            DesiredResource(
                address=address,
                kind=ResourceKind.ASSIGNMENT,
                name=spec.name,
                scope=scope,
                resource_id=resource_id,
                attributes=_canonical({
                    "name": spec.name,
                    "displayName": spec.display_name,
                    "description": spec.description,
                    "policyDefinitionId": policy_definition_id,
                    "enforcementMode": spec.enforcement_mode.value,
                    "parameters": {k: {"value": v} for k, v in spec.parameters.items()},
                    "notScopes": list(spec.not_scopes),
                }),
                depends_on=depends_on,
            )
        )

    if doc_errors:
        errors = doc_errors + dep_errors
        raise PolicyDocumentError(
            f"Stack {stack.path} is invalid:\n  - " + "\n  - ".join(errors), errors
        )
    if dep_errors:
        raise DependencyOrderingError(
            "Unresolved definition references:\n  - " + "\n  - ".join(dep_errors), dep_errors
        )
    return resources


def topological_order(nodes: dict[str, tuple[str, list[str]]]) -> list[str]:
    """Order addresses so every node follows the nodes it depends on.

    Args:
        nodes: address -> (kind, depends_on addresses).

    Returns:
        Addresses in dependency order; ties broken by kind rank then address.

    Raises:
        DependencyOrderingError: If a cycle is detected.
    """
    # Kahn's algorithm; edges outside the node set are ignored
    in_degree = {
        address: sum(1 for dep in deps if dep in nodes) for address, (_, deps) in nodes.items()
    }
    dependents: dict[str, list[str]] = {address: [] for address in nodes}
    for address, (_, deps) in nodes.items():
        for dep in deps:
            if dep in nodes:
                dependents[dep].append(address)

    def sort_key(address: str) -> tuple[int, str]:
        return (KIND_RANK.get(nodes[address][0], 99), address)

    ready = sorted((a for a, d in in_degree.items() if d == 0), key=sort_key)
    ordered: list[str] = []
    while ready:
        current = ready.pop(0)
        ordered.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                ready.append(dependent)
        ready.sort(key=sort_key)

    if len(ordered) != len(nodes):
        cycle = sorted(a for a, d in in_degree.items() if d > 0)
        raise DependencyOrderingError(f"Dependency cycle detected among: {cycle}")
    return ordered


@dataclass
class ResourceChange:
    """Planned change for one address."""

    address: str
    kind: str
    action: ChangeAction
    name: str
    scope: str
    resource_id: str
    prior_resource_id: str | None = None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    depends_on: list[str] = field(default_factory=list)
    # Address the record is moved from, when the stack key was renamed
    prior_address: str | None = None

    @property
    def changed_attributes(self) -> list[str]:
        """Top-level attributes that differ between before and after."""
        before = self.before or {}
        after = self.after or {}
        return sorted(k for k in set(before) | set(after) if before.get(k) != after.get(k))

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "kind": self.kind,
            "action": self.action.value,
            "name": self.name,
            "scope": self.scope,
            "id": self.resource_id,
            "priorId": self.prior_resource_id,
            "before": self.before,
            "after": self.after,
            "dependsOn": list(self.depends_on),
            "priorAddress": self.prior_address,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceChange:
        return cls(
            address=data["address"],
            kind=data["kind"],
            action=ChangeAction(data["action"]),
            name=data["name"],
            scope=data["scope"],
            resource_id=data["id"],
            prior_resource_id=data.get("priorId"),
            before=data.get("before"),
            after=data.get("after"),
            depends_on=list(data.get("dependsOn", [])),
            prior_address=data.get("priorAddress"),
        )


class OperationType(str, Enum):
    """Azure write performed for a step of the plan."""

    PUT = "put"
    DELETE = "delete"


@dataclass(frozen=True)
class Operation:
    """One Azure write, in execution order."""

    type: OperationType
    change: ResourceChange

    @property
    def target_id(self) -> str:
        if self.type == OperationType.DELETE and self.change.action == ChangeAction.REPLACE:
            assert self.change.prior_resource_id is not None
            return self.change.prior_resource_id
        return self.change.resource_id


@dataclass
class Plan:
    """An ordered set of changes computed against one state version."""

    lineage: str
    serial: int
    changes: list[ResourceChange] = field(default_factory=list)
    destroy: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def count(self, action: ChangeAction) -> int:
        return sum(1 for c in self.changes if c.action == action)

    def summary(self) -> dict[str, int]:
        """Change counts per action, in the usual "N to add" sense."""
        return {
            "add": self.count(ChangeAction.CREATE) + self.count(ChangeAction.REPLACE),
            "change": self.count(ChangeAction.UPDATE),
            "destroy": self.count(ChangeAction.DELETE) + self.count(ChangeAction.REPLACE),
            "move": self.count(ChangeAction.MOVE),
        }

    def moves(self) -> list[ResourceChange]:
        """Changes that only re-key a state record; they need no Azure write."""
        return [c for c in self.changes if c.action == ChangeAction.MOVE]

    def operations(self) -> list[Operation]:
        """Expand changes into ordered Azure writes (puts, then deletes)."""
        puts = [
            Operation(OperationType.PUT, c)
            for c in self.changes
            if c.action in (ChangeAction.CREATE, ChangeAction.UPDATE, ChangeAction.REPLACE)
        ]
        deletes = [
            Operation(OperationType.DELETE, c)
            for c in self.changes
            if c.action in (ChangeAction.DELETE, ChangeAction.REPLACE)
        ]
        nodes = {op.change.address: (op.change.kind, op.change.depends_on) for op in deletes}
        order = {address: i for i, address in enumerate(topological_order(nodes))}
        deletes.sort(key=lambda op: order[op.change.address], reverse=True)
        return puts + deletes

    def to_dict(self) -> dict[str, Any]:
        return {
            "formatVersion": PLAN_FORMAT_VERSION,
            "lineage": self.lineage,
            "serial": self.serial,
            "destroy": self.destroy,
            "createdAt": self.created_at.isoformat(),
            "changes": [c.to_dict() for c in self.changes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        if not isinstance(data, dict):
            raise ValueError(f"Plan must be a JSON object, got {type(data).__name__}")
        if data.get("formatVersion") != PLAN_FORMAT_VERSION:
            raise ValueError(f"Unsupported plan format version: {data.get('formatVersion')}")
        return cls(
            lineage=data["lineage"],
            serial=int(data["serial"]),
            destroy=bool(data.get("destroy", False)),
            created_at=datetime.fromisoformat(data["createdAt"]),
            changes=[ResourceChange.from_dict(c) for c in data.get("changes", [])],
        )


def compute_plan(
    desired: list[DesiredResource],
    snapshot: StateSnapshot,
    *,
    destroy: bool = False,
) -> Plan:
    """Diff desired resources against recorded state.

    Args:
        desired: Resources as declared (ignored when destroy is True).
        snapshot: State to diff against.
        destroy: Plan removal of everything in state.

    Returns:
        Plan with no-op entries omitted, in execution order.
    """
    if destroy:
        desired = []

    by_address = {r.address: r for r in desired}
    desired_ids = {r.resource_id.lower() for r in desired}
    records_by_id = {
        record.resource_id.lower(): record for record in snapshot.resources.values()
    }
    changes: dict[str, ResourceChange] = {}

    for resource in desired:
        record = snapshot.resources.get(resource.address)
        if record is not None and _same_id(record.resource_id, resource.resource_id):
            source = record
        else:
            # The stack key may have been renamed while the identifier stayed
            source = records_by_id.get(resource.resource_id.lower())

        # The identifier previously recorded at this address, if it must go
        displaced = None
        if (
            record is not None
            and record is not source
            and record.resource_id.lower() not in desired_ids
        ):
            displaced = record

        if displaced is not None:
            # Name or scope changed: identifiers are immutable
            action = ChangeAction.REPLACE
        elif source is None:
            action = ChangeAction.CREATE
        elif _canonical(source.attributes) != resource.attributes:
            action = ChangeAction.UPDATE
        elif source.address != resource.address:
            action = ChangeAction.MOVE
        else:
            continue

        before = (displaced or source).attributes if (displaced or source) else None
        changes[resource.address] = ResourceChange(
            address=resource.address,
            kind=resource.kind.value,
            action=action,
            name=resource.name,
            scope=resource.scope,
            resource_id=resource.resource_id,
            prior_resource_id=displaced.resource_id if displaced else None,
            before=before,
            after=resource.attributes,
            depends_on=list(resource.depends_on),
            prior_address=(
                source.address
                if source is not None and source.address != resource.address
                else None
            ),
        )

    for address, record in snapshot.resources.items():
        if address in by_address or record.resource_id.lower() in desired_ids:
            continue
        changes[address] = ResourceChange(
            address=address,
            kind=record.kind,
            action=ChangeAction.DELETE,
            name=record.name,
            scope=record.scope,
            resource_id=record.resource_id,
            prior_resource_id=record.resource_id,
            before=record.attributes,
            after=None,
            depends_on=list(record.depends_on),
        )

    writes = {a: c for a, c in changes.items() if c.action != ChangeAction.DELETE}
    removals = {a: c for a, c in changes.items() if c.action == ChangeAction.DELETE}
    write_order = topological_order({a: (c.kind, c.depends_on) for a, c in writes.items()})
    removal_order = topological_order({a: (c.kind, c.depends_on) for a, c in removals.items()})

    plan = Plan(
        lineage=snapshot.lineage,
        serial=snapshot.serial,
        changes=[writes[a] for a in write_order] + [removals[a] for a in reversed(removal_order)],
        destroy=destroy,
    )

    logger.info(
        "Plan computed",
        extra={"serial": snapshot.serial, "destroy": destroy, **plan.summary()},
    )
    return plan
