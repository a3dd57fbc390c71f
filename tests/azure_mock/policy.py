"""Mock Azure Policy state, management client, and enforcement engine.

MockPolicyClient mimics the operation groups of azure.mgmt.resource.PolicyClient
used by the reconciler. MockPolicyEngine stands in for Azure's policy
evaluation at resource-creation time so tests can check what an applied
assignment actually enforces.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass, field
from typing import Any

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

# Built-in "Allowed locations" definition, present in every tenant
BUILTIN_ALLOWED_LOCATIONS_ID = (
    "/providers/Microsoft.Authorization/policyDefinitions/e56962a6-4747-49cd-b67b-bf8b01975c4c"
)

RESOURCE_GROUP_TYPE = "Microsoft.Resources/subscriptions/resourceGroups"

_PARAMETER_REF = re.compile(r"^\[\s*parameters\(\s*'([^']+)'\s*\)\s*\]$")


def http_error(status_code: int, code: str, message: str) -> HttpResponseError:
    """Build an HttpResponseError carrying a status code, as the SDK raises."""
    error_cls = ResourceNotFoundError if status_code == 404 else HttpResponseError
    error = error_cls(message=f"({code}) {message}")
    error.status_code = status_code
    error.reason = code
    return error


@dataclass
class MockPolicyDefinition:
    """A policy definition as stored by the mock."""

    id: str
    name: str
    scope: str
    policy_type: str
    mode: str
    display_name: str | None
    description: str | None
    policy_rule: dict[str, Any]
    metadata: dict[str, Any] | None = None
    parameters: dict[str, Any] | None = None


@dataclass
class MockPolicyAssignment:
    """A policy assignment as stored by the mock."""

    id: str
    name: str
    scope: str
    policy_definition_id: str
    display_name: str | None = None
    description: str | None = None
    enforcement_mode: str = "Default"
    parameters: dict[str, Any] | None = None
    not_scopes: list[str] = field(default_factory=list)


@dataclass
class MockWrite:
    """One recorded write, for ordering assertions."""

    operation: str
    resource_id: str


class MockPolicyState:
    """In-memory policy resources shared by every mock client."""

    def __init__(self) -> None:
        self._definitions: dict[str, MockPolicyDefinition] = {}
        self._assignments: dict[str, MockPolicyAssignment] = {}
        self.resource_groups: dict[str, dict[str, Any]] = {}
        self.writes: list[MockWrite] = []
        self.denied_scopes: set[str] = set()
        self.put_definition(
            MockPolicyDefinition(
                id=BUILTIN_ALLOWED_LOCATIONS_ID,
                name="e56962a6-4747-49cd-b67b-bf8b01975c4c",
                scope="",
                policy_type="BuiltIn",
                mode="Indexed",
                display_name="Allowed locations",
                description=None,
                policy_rule={
                    "if": {
                        "field": "location",
                        "notIn": "[parameters('listOfAllowedLocations')]",
                    },
                    "then": {"effect": "deny"},
                },
                parameters={"listOfAllowedLocations": {"type": "Array"}},
            )
        )

    @property
    def definition_count(self) -> int:
        return len(self._definitions)

    @property
    def assignment_count(self) -> int:
        return len(self._assignments)

    @property
    def write_count(self) -> int:
        return len(self.writes)

    def get_definition(self, resource_id: str) -> MockPolicyDefinition | None:
        return self._definitions.get(resource_id.lower())

    def put_definition(self, definition: MockPolicyDefinition) -> None:
        self._definitions[definition.id.lower()] = definition

    def remove_definition(self, resource_id: str) -> bool:
        return self._definitions.pop(resource_id.lower(), None) is not None

    def get_assignment(self, resource_id: str) -> MockPolicyAssignment | None:
        return self._assignments.get(resource_id.lower())

    def put_assignment(self, assignment: MockPolicyAssignment) -> None:
        self._assignments[assignment.id.lower()] = assignment

    def remove_assignment(self, resource_id: str) -> bool:
        return self._assignments.pop(resource_id.lower(), None) is not None

    def assignments(self) -> list[MockPolicyAssignment]:
        return list(self._assignments.values())

    def assignments_of(self, definition_id: str) -> list[MockPolicyAssignment]:
        return [
            a for a in self._assignments.values()
            if a.policy_definition_id.lower() == definition_id.lower()
        ]

    def check_write_allowed(self, scope: str) -> None:
        """Raise 403 when the caller has no write role at scope."""
        for denied in self.denied_scopes:
            if (scope.lower() + "/").startswith(denied.lower().rstrip("/") + "/"):
                raise http_error(
                    403,
                    "AuthorizationFailed",
                    f"The client does not have authorization to perform action "
                    f"'Microsoft.Authorization/policyAssignments/write' over scope '{scope}'",
                )

    def record(self, operation: str, resource_id: str) -> None:
        self.writes.append(MockWrite(operation=operation, resource_id=resource_id))


class MockDefinitionOperations:
    """Mimics PolicyClient.policy_definitions."""

    def __init__(self, state: MockPolicyState, subscription_id: str) -> None:
        self._state = state
        self._subscription_id = subscription_id

    def _put(self, scope: str, name: str, parameters: Any) -> MockPolicyDefinition:
        self._state.check_write_allowed(scope)
        rule = parameters.policy_rule
        if not isinstance(rule, dict) or set(rule) != {"if", "then"}:
            raise http_error(400, "InvalidPolicyRule", "The policy rule is malformed")
        resource_id = f"{scope}/providers/Microsoft.Authorization/policyDefinitions/{name}"
        definition = MockPolicyDefinition(
            id=resource_id,
            name=name,
            scope=scope,
            policy_type=parameters.policy_type or "Custom",
            mode=parameters.mode or "Indexed",
            display_name=parameters.display_name,
            description=parameters.description,
            policy_rule=rule,
            metadata=parameters.metadata,
            parameters=parameters.parameters,
        )
        self._state.put_definition(definition)
        self._state.record("put", resource_id)
        return definition

    def _delete(self, scope: str, name: str) -> None:
        self._state.check_write_allowed(scope)
        resource_id = f"{scope}/providers/Microsoft.Authorization/policyDefinitions/{name}"
        if self._state.assignments_of(resource_id):
            raise http_error(
                400,
                "PolicyDefinitionInUse",
                f"The policy definition '{name}' is referenced by existing assignments",
            )
        self._state.remove_definition(resource_id)
        self._state.record("delete", resource_id)

    def create_or_update(
        self, policy_definition_name: str, parameters: Any, **kwargs: Any
    ) -> MockPolicyDefinition:
        return self._put(f"/subscriptions/{self._subscription_id}", policy_definition_name,
                         parameters)

    def create_or_update_at_management_group(
        self, policy_definition_name: str, management_group_id: str, parameters: Any,
        **kwargs: Any,
    ) -> MockPolicyDefinition:
        scope = f"/providers/Microsoft.Management/managementGroups/{management_group_id}"
        return self._put(scope, policy_definition_name, parameters)

    def get(self, policy_definition_name: str, **kwargs: Any) -> MockPolicyDefinition:
        resource_id = (
            f"/subscriptions/{self._subscription_id}"
            f"/providers/Microsoft.Authorization/policyDefinitions/{policy_definition_name}"
        )
        definition = self._state.get_definition(resource_id)
        if definition is None:
            raise http_error(404, "PolicyDefinitionNotFound", f"{policy_definition_name} not found")
        return definition

    def delete(self, policy_definition_name: str, **kwargs: Any) -> None:
        self._delete(f"/subscriptions/{self._subscription_id}", policy_definition_name)

    def delete_at_management_group(
        self, policy_definition_name: str, management_group_id: str, **kwargs: Any
    ) -> None:
        scope = f"/providers/Microsoft.Management/managementGroups/{management_group_id}"
        self._delete(scope, policy_definition_name)


class MockAssignmentOperations:
    """Mimics PolicyClient.policy_assignments."""

    def __init__(self, state: MockPolicyState) -> None:
        self._state = state

    def create(
        self, scope: str, policy_assignment_name: str, parameters: Any, **kwargs: Any
    ) -> MockPolicyAssignment:
        self._state.check_write_allowed(scope)
        definition_id = parameters.policy_definition_id
        if self._state.get_definition(definition_id) is None:
            raise http_error(
                404,
                "PolicyDefinitionNotFound",
                f"The policy definition '{definition_id}' could not be found",
            )
        resource_id = (
            f"{scope}/providers/Microsoft.Authorization/policyAssignments/{policy_assignment_name}"
        )
        assignment = MockPolicyAssignment(
            id=resource_id,
            name=policy_assignment_name,
            scope=scope,
            policy_definition_id=definition_id,
            display_name=parameters.display_name,
            description=parameters.description,
            enforcement_mode=parameters.enforcement_mode or "Default",
            parameters=parameters.parameters,
            not_scopes=list(parameters.not_scopes or []),
        )
        self._state.put_assignment(assignment)
        self._state.record("put", resource_id)
        return assignment

    def get(self, scope: str, policy_assignment_name: str, **kwargs: Any) -> MockPolicyAssignment:
        resource_id = (
            f"{scope}/providers/Microsoft.Authorization/policyAssignments/{policy_assignment_name}"
        )
        assignment = self._state.get_assignment(resource_id)
        if assignment is None:
            raise http_error(404, "PolicyAssignmentNotFound", f"{policy_assignment_name} not found")
        return assignment

    def delete(self, scope: str, policy_assignment_name: str, **kwargs: Any) -> None:
        self._state.check_write_allowed(scope)
        resource_id = (
            f"{scope}/providers/Microsoft.Authorization/policyAssignments/{policy_assignment_name}"
        )
        self._state.remove_assignment(resource_id)
        self._state.record("delete", resource_id)


class MockPolicyClient:
    """Mimics azure.mgmt.resource.PolicyClient against shared state."""

    def __init__(self, state: MockPolicyState, credential: Any, subscription_id: str) -> None:
        self.credential = credential
        self.subscription_id = subscription_id
        self.policy_definitions = MockDefinitionOperations(state, subscription_id)
        self.policy_assignments = MockAssignmentOperations(state)


# =============================================================================
# Enforcement
# =============================================================================


class MockPolicyEngine:
    """Evaluates stored assignments when resources are created.

    Supports the condition subset the tests exercise: field/value sources,
    the common comparison operators, allOf/anyOf/not, and parameter references.
    """

    def __init__(self, state: MockPolicyState) -> None:
        self._state = state

    def create_resource_group(
        self, subscription_id: str, name: str, location: str, tags: dict[str, str] | None = None
    ) -> dict[str, Any]:
        """Create a resource group, or raise 403 RequestDisallowedByPolicy."""
        resource_id = f"/subscriptions/{subscription_id}/resourceGroups/{name}"
        resource = {
            "id": resource_id,
            "type": RESOURCE_GROUP_TYPE,
            "name": name,
            "location": location,
            "tags": dict(tags or {}),
        }

        for assignment in self._applicable(resource_id):
            definition = self._state.get_definition(assignment.policy_definition_id)
            if definition is None:
                continue
            parameters = self._parameter_values(definition, assignment)
            rule = definition.policy_rule
            effect = str(self._resolve(rule["then"]["effect"], parameters)).lower()
            if effect == "deny" and self._matches(rule["if"], resource, parameters):
                raise http_error(
                    403,
                    "RequestDisallowedByPolicy",
                    f"Resource '{name}' was disallowed by policy. Policy identifiers: "
                    f"'{assignment.id}'",
                )

        self._state.resource_groups[resource_id.lower()] = resource
        return resource

    def _applicable(self, resource_id: str) -> list[MockPolicyAssignment]:
        target = resource_id.lower() + "/"
        result = []
        for assignment in self._state.assignments():
            if assignment.enforcement_mode != "Default":
                continue
            if not target.startswith(assignment.scope.lower().rstrip("/") + "/"):
                continue
            if any(target.startswith(ns.lower().rstrip("/") + "/") for ns in assignment.not_scopes):
                continue
            result.append(assignment)
        return result

    @staticmethod
    def _parameter_values(
        definition: MockPolicyDefinition, assignment: MockPolicyAssignment
    ) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for key, spec in (definition.parameters or {}).items():
            if isinstance(spec, dict) and "defaultValue" in spec:
                values[key] = spec["defaultValue"]
        for key, wrapped in (assignment.parameters or {}).items():
            values[key] = wrapped["value"] if isinstance(wrapped, dict) else wrapped
        return values

    @staticmethod
    def _resolve(value: Any, parameters: dict[str, Any]) -> Any:
        if isinstance(value, str):
            m = _PARAMETER_REF.match(value)
            if m:
                return parameters.get(m.group(1))
        return value

    @staticmethod
    def _field(resource: dict[str, Any], path: str) -> Any:
        if path.startswith("tags[") and path.endswith("]"):
            return resource["tags"].get(path[5:-1].strip("'"))
        if path.startswith("tags."):
            return resource["tags"].get(path[5:])
        return resource.get(path)

    def _matches(self, condition: dict[str, Any], resource: dict[str, Any],
                 parameters: dict[str, Any]) -> bool:
        if "allOf" in condition:
            return all(self._matches(c, resource, parameters) for c in condition["allOf"])
        if "anyOf" in condition:
            return any(self._matches(c, resource, parameters) for c in condition["anyOf"])
        if "not" in condition:
            return not self._matches(condition["not"], resource, parameters)

        if "field" in condition:
            actual = self._field(resource, condition["field"])
        else:
            actual = self._resolve(condition.get("value"), parameters)

        for op, raw in condition.items():
            if op in ("field", "value"):
                continue
            return self._compare(op, actual, self._resolve(raw, parameters))
        return False

    @staticmethod
    def _compare(op: str, actual: Any, expected: Any) -> bool:
        def norm(v: Any) -> Any:
            return v.lower() if isinstance(v, str) else v

        if op == "exists":
            return (actual is not None) == (str(expected).lower() == "true")
        if op == "notEquals":
            return norm(actual) != norm(expected)
        if op == "notIn":
            return norm(actual) not in [norm(e) for e in expected or []]
        if op == "notLike":
            return actual is None or not fnmatch.fnmatch(str(actual).lower(), str(expected).lower())
        if actual is None:
            return False
        if op == "equals":
            return norm(actual) == norm(expected)
        if op == "in":
            return norm(actual) in [norm(e) for e in expected or []]
        if op == "like":
            return fnmatch.fnmatch(str(actual).lower(), str(expected).lower())
        if op == "contains":
            return str(expected).lower() in str(actual).lower()
        raise NotImplementedError(f"operator not simulated: {op}")
