"""Pydantic models for policy rule documents and the stack manifest.

These models provide:
1. Type-safe parsing of rule JSON and stack YAML
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation back to the Azure Policy document shape
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import (
    MAX_ASSIGNMENT_NAME_LENGTH,
    MAX_DISPLAY_NAME_LENGTH,
    MAX_POLICY_NAME_LENGTH,
    MAX_RESOURCES_PER_STACK,
)

# =============================================================================
# Scopes and identifiers
# =============================================================================

SUBSCRIPTION_SCOPE_PATTERN = re.compile(
    r"^/subscriptions/[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
RESOURCE_GROUP_SCOPE_PATTERN = re.compile(
    r"^/subscriptions/[0-9a-fA-F-]{36}/resourceGroups/[-\w._()]{1,90}$"
)
MANAGEMENT_GROUP_SCOPE_PATTERN = re.compile(
    r"^/providers/Microsoft\.Management/managementGroups/[-\w.()]{1,90}$"
)
DEFINITION_ID_PATTERN = re.compile(
    r"^(?P<scope>.*)/providers/Microsoft\.Authorization/policyDefinitions/(?P<name>[^/]+)$",
    re.IGNORECASE,
)

# Logical keys name entries in the stack manifest (like resource block labels)
LOGICAL_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]{0,63}$")

# Characters Azure rejects in policy names
INVALID_NAME_CHARACTERS = set('<>*%&:\\?.+/')

DEFINITION_MODE_PATTERN = re.compile(r"^(All|Indexed|Microsoft\.[A-Za-z]+\.Data)$")
PARAMETER_EXPRESSION_PATTERN = re.compile(r"^\[\s*parameters\(\s*'[^']+'\s*\)\s*\]$")


class ScopeKind(str, Enum):
    """Azure hierarchy levels a policy can target."""

    MANAGEMENT_GROUP = "managementGroup"
    SUBSCRIPTION = "subscription"
    RESOURCE_GROUP = "resourceGroup"


def scope_kind(scope: str) -> ScopeKind:
    """Classify a scope identifier.

    Raises:
        ValueError: If the scope is not a recognised Azure scope id.
    """
    if SUBSCRIPTION_SCOPE_PATTERN.match(scope):
        return ScopeKind.SUBSCRIPTION
    if RESOURCE_GROUP_SCOPE_PATTERN.match(scope):
        return ScopeKind.RESOURCE_GROUP
    if MANAGEMENT_GROUP_SCOPE_PATTERN.match(scope):
        return ScopeKind.MANAGEMENT_GROUP
    raise ValueError(f"not a valid Azure scope: {scope}")


def definition_id(scope: str, name: str) -> str:
    """Deterministic resource id of a policy definition."""
    return f"{scope}/providers/Microsoft.Authorization/policyDefinitions/{name}"


def assignment_id(scope: str, name: str) -> str:
    """Deterministic resource id of a policy assignment."""
    return f"{scope}/providers/Microsoft.Authorization/policyAssignments/{name}"


def is_definition_id(reference: str) -> bool:
    """Check whether a definition reference is a full resource id."""
    return DEFINITION_ID_PATTERN.match(reference) is not None


def _validate_policy_name(v: str) -> str:
    bad = sorted(set(v) & INVALID_NAME_CHARACTERS)
    if bad:
        raise ValueError(f"name contains invalid characters: {''.join(bad)}")
    if v != v.strip():
        raise ValueError("name must not start or end with whitespace")
    return v


# =============================================================================
# Policy Rule Document
# =============================================================================


class ConditionOperator(str, Enum):
    """Comparison operators of the Azure Policy condition language."""

    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    LIKE = "like"
    NOT_LIKE = "notLike"
    MATCH = "match"
    NOT_MATCH = "notMatch"
    MATCH_INSENSITIVELY = "matchInsensitively"
    NOT_MATCH_INSENSITIVELY = "notMatchInsensitively"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    IN = "in"
    NOT_IN = "notIn"
    CONTAINS_KEY = "containsKey"
    NOT_CONTAINS_KEY = "notContainsKey"
    LESS = "less"
    LESS_OR_EQUALS = "lessOrEquals"
    GREATER = "greater"
    GREATER_OR_EQUALS = "greaterOrEquals"
    EXISTS = "exists"


OPERATOR_NAMES: frozenset[str] = frozenset(op.value for op in ConditionOperator)

# Operators whose operand must be a list
LIST_OPERATORS: frozenset[ConditionOperator] = frozenset({
    ConditionOperator.IN,
    ConditionOperator.NOT_IN,
})


class PolicyEffect(str, Enum):
    """Effects a rule may trigger."""

    DENY = "Deny"
    AUDIT = "Audit"
    APPEND = "Append"
    MODIFY = "Modify"
    AUDIT_IF_NOT_EXISTS = "AuditIfNotExists"
    DEPLOY_IF_NOT_EXISTS = "DeployIfNotExists"
    DISABLED = "Disabled"
    DENY_ACTION = "DenyAction"
    MANUAL = "Manual"


# Effects that need a `details` block
EFFECTS_REQUIRING_DETAILS: frozenset[PolicyEffect] = frozenset({
    PolicyEffect.APPEND,
    PolicyEffect.MODIFY,
    PolicyEffect.AUDIT_IF_NOT_EXISTS,
    PolicyEffect.DEPLOY_IF_NOT_EXISTS,
    PolicyEffect.DENY_ACTION,
})


class Condition(BaseModel):
    """A single condition or a logical combination of conditions.

    Leaf form:    {"field": "location", "notEquals": "eastus"}
    Value form:   {"value": "[resourceGroup().location]", "equals": "eastus"}
    Logical form: {"allOf": [...]}, {"anyOf": [...]}, {"not": {...}}

    The raw operator key is lifted into `operator`/`operand` on input and
    restored by `to_document()`.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    field: str | None = None
    value: Any = None
    operator: ConditionOperator | None = None
    operand: Any = None
    all_of: list[Condition] | None = Field(None, alias="allOf")
    any_of: list[Condition] | None = Field(None, alias="anyOf")
    not_: Condition | None = Field(None, alias="not")

    @model_validator(mode="before")
    @classmethod
    def lift_operator(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError("condition must be a JSON object")
        # Internal fields only; the rule language names the operator itself
        internal = sorted(key for key in ("operator", "operand") if key in data)
        if internal:
            raise ValueError(f"unknown condition keys {internal}")
        found = [key for key in data if key in OPERATOR_NAMES]
        if len(found) > 1:
            raise ValueError(f"condition has more than one operator: {sorted(found)}")
        if not found:
            return data
        lifted = dict(data)
        lifted["operator"] = found[0]
        lifted["operand"] = lifted.pop(found[0])
        return lifted

    @model_validator(mode="after")
    def check_shape(self) -> Condition:
        has_source = self.field is not None or "value" in self.model_fields_set
        logical = [
            name
            for name, present in (
                ("allOf", self.all_of is not None),
                ("anyOf", self.any_of is not None),
                ("not", self.not_ is not None),
            )
            if present
        ]

        if logical:
            if has_source or self.operator is not None:
                raise ValueError(f"'{logical[0]}' cannot be combined with a field comparison")
            if len(logical) > 1:
                raise ValueError(f"condition mixes logical operators: {logical}")
            if self.all_of is not None and not self.all_of:
                raise ValueError("allOf must contain at least one condition")
            if self.any_of is not None and not self.any_of:
                raise ValueError("anyOf must contain at least one condition")
            return self

        if self.field is not None and "value" in self.model_fields_set:
            raise ValueError("condition cannot have both 'field' and 'value'")
        if not has_source:
            raise ValueError("condition needs 'field', 'value', 'allOf', 'anyOf' or 'not'")
        if self.operator is None:
            raise ValueError(f"condition has no operator; expected one of {sorted(OPERATOR_NAMES)}")
        if self.field is not None and not self.field.strip():
            raise ValueError("field must not be empty")
        if self.operator in LIST_OPERATORS and not (
            isinstance(self.operand, list) or _is_expression(self.operand)
        ):
            raise ValueError(f"'{self.operator.value}' requires a list value")
        if self.operator == ConditionOperator.EXISTS and not (
            isinstance(self.operand, bool) or _is_expression(self.operand)
            or str(self.operand).lower() in ("true", "false")
        ):
            raise ValueError("'exists' requires true or false")
        return self

    def to_document(self) -> dict[str, Any]:
        """Render back to the Azure Policy JSON shape."""
        if self.all_of is not None:
            return {"allOf": [c.to_document() for c in self.all_of]}
        if self.any_of is not None:
            return {"anyOf": [c.to_document() for c in self.any_of]}
        if self.not_ is not None:
            return {"not": self.not_.to_document()}

        doc: dict[str, Any] = {}
        if self.field is not None:
            doc["field"] = self.field
        else:
            doc["value"] = self.value
        assert self.operator is not None
        doc[self.operator.value] = self.operand
        return doc


def _is_expression(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("[") and value.endswith("]")


class PolicyThen(BaseModel):
    """The `then` block: one effect plus optional details."""

    model_config = {"extra": "forbid"}

    effect: str
    details: Any | None = None

    @field_validator("effect")
    @classmethod
    def normalize_effect(cls, v: str) -> str:
        if PARAMETER_EXPRESSION_PATTERN.match(v):
            return v
        for effect in PolicyEffect:
            if effect.value.lower() == v.lower():
                return effect.value
        raise ValueError(f"effect must be one of {[e.value for e in PolicyEffect]}: {v}")

    @model_validator(mode="after")
    def check_details(self) -> PolicyThen:
        effect = self.effect_enum
        if effect in EFFECTS_REQUIRING_DETAILS and self.details is None:
            raise ValueError(f"effect '{effect.value}' requires 'details'")
        return self

    @property
    def effect_enum(self) -> PolicyEffect | None:
        """The effect as an enum, None when it is a parameter expression."""
        try:
            return PolicyEffect(self.effect)
        except ValueError:
            return None


class PolicyRule(BaseModel):
    """A policy rule document: exactly one condition and one effect."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    if_: Condition = Field(alias="if")
    then: PolicyThen

    def to_document(self) -> dict[str, Any]:
        """Render as the `policyRule` JSON sent to Azure."""
        then: dict[str, Any] = {"effect": self.then.effect}
        if self.then.details is not None:
            then["details"] = self.then.details
        return {"if": self.if_.to_document(), "then": then}


# =============================================================================
# Stack manifest
# =============================================================================


class PolicyType(str, Enum):
    """Policy definition types."""

    CUSTOM = "Custom"
    BUILT_IN = "BuiltIn"
    STATIC = "Static"


class EnforcementMode(str, Enum):
    """Assignment enforcement modes."""

    DEFAULT = "Default"
    DO_NOT_ENFORCE = "DoNotEnforce"


class PolicyDefinitionSpec(BaseModel):
    """Declared custom policy definition.

    The rule itself lives in a separate JSON document referenced by
    `ruleFile`, relative to the stack manifest.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=MAX_POLICY_NAME_LENGTH)]
    display_name: Annotated[
        str, Field(min_length=1, max_length=MAX_DISPLAY_NAME_LENGTH, alias="displayName")
    ]
    description: str = ""
    policy_type: PolicyType = Field(PolicyType.CUSTOM, alias="policyType")
    mode: str = "All"
    rule_file: str = Field(alias="ruleFile")
    metadata: dict[str, Any] = Field(default_factory=dict)
    parameters: dict[str, Any] = Field(default_factory=dict)
    scope: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_policy_name(v)

    @field_validator("policy_type")
    @classmethod
    def validate_policy_type(cls, v: PolicyType) -> PolicyType:
        if v != PolicyType.CUSTOM:
            raise ValueError(
                f"only Custom definitions can be declared; reference {v.value} "
                "definitions by id from an assignment"
            )
        return v

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        if not DEFINITION_MODE_PATTERN.match(v):
            raise ValueError(f"mode must be All, Indexed or a resource provider mode: {v}")
        return v


class PolicyAssignmentSpec(BaseModel):
    """Declared assignment binding a definition to a scope.

    `definition` is either the logical key of a definition in the same
    stack or a full policy definition resource id.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=MAX_ASSIGNMENT_NAME_LENGTH)]
    display_name: Annotated[
        str, Field(min_length=1, max_length=MAX_DISPLAY_NAME_LENGTH, alias="displayName")
    ]
    description: str = ""
    definition: Annotated[str, Field(min_length=1)]
    scope: str | None = None
    enforcement_mode: EnforcementMode = Field(EnforcementMode.DEFAULT, alias="enforcementMode")
    parameters: dict[str, Any] = Field(default_factory=dict)
    not_scopes: list[str] = Field(default_factory=list, alias="notScopes")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_policy_name(v)


class StackSpec(BaseModel):
    """The declared resource blocks: definitions and assignments."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    definitions: dict[str, PolicyDefinitionSpec] = Field(default_factory=dict)
    assignments: dict[str, PolicyAssignmentSpec] = Field(default_factory=dict)

    @field_validator("definitions", "assignments")
    @classmethod
    def validate_keys(cls, v: dict[str, Any]) -> dict[str, Any]:
        for key in v:
            if not LOGICAL_KEY_PATTERN.match(key):
                raise ValueError(
                    f"'{key}' is not a valid logical name (letters, digits, '_' and '-')"
                )
        return v

    @model_validator(mode="after")
    def check_size(self) -> StackSpec:
        total = len(self.definitions) + len(self.assignments)
        if total > MAX_RESOURCES_PER_STACK:
            raise ValueError(
                f"stack declares {total} resources, maximum is {MAX_RESOURCES_PER_STACK}"
            )
        return self
