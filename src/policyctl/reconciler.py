"""Reconciliation driver using the Azure SDK for Python.

This module implements the declare/diff/apply cycle for policy resources:
1. init: resolve credentials, build SDK clients, initialise the state backend
2. validate: load the stack and every rule document, report all problems
3. plan: diff desired resources against the state file
4. apply: under the state lock, execute the plan in dependency order

Apply is fail-stop: the first failing write halts the run. State is committed
after every successful write, so it always reflects exactly what Azure
accepted. Nothing is retried and nothing is rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.mgmt.resource import PolicyClient
from azure.mgmt.resource.policy.models import PolicyAssignment, PolicyDefinition

from .config import Config, StateBackendKind
from .document_loader import PolicyDocumentError, load_stack
from .models import MANAGEMENT_GROUP_SCOPE_PATTERN, ScopeKind, scope_kind
from .plan import (
    ChangeAction,
    DependencyOrderingError,
    DesiredResource,
    Operation,
    OperationType,
    Plan,
    ResourceChange,
    ResourceKind,
    build_desired_resources,
    compute_plan,
)
from .security import (
    AuthenticationError,
    AuthorizationError,
    Credentials,
    get_client_secret_credential,
    log_security_audit_event,
)
from .state import ResourceRecord, StalePlanError, StateBackend, StateSnapshot, StateStore
from .state_blob import BlobStateStore

logger = logging.getLogger(__name__)


class ApplyError(Exception):
    """Raised when Azure rejects a write for a reason outside the known kinds."""

    pass


class NotInitializedError(Exception):
    """Raised when apply runs before init has built the SDK clients."""

    pass


@dataclass
class ValidationReport:
    """Outcome of validate(): ok when there are no errors."""

    errors: list[str] = field(default_factory=list)
    definitions: int = 0
    assignments: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "errors": list(self.errors),
            "definitions": self.definitions,
            "assignments": self.assignments,
        }


@dataclass
class ApplyResult:
    """Result of a successful apply."""

    plan: Plan
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    applied: list[str] = field(default_factory=list)
    serial: int = 0

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def changed(self) -> bool:
        return bool(self.applied)


def _scope_subscription(scope: str) -> str | None:
    parts = scope.split("/")
    if len(parts) > 2 and parts[1].lower() == "subscriptions":
        return parts[2]
    return None


def _management_group_name(scope: str) -> str:
    return scope.rsplit("/", 1)[-1]


def open_state_store(config: Config) -> StateBackend:
    """Build the state backend the configuration selects."""
    if config.state_backend == StateBackendKind.AZURE_BLOB:
        assert config.state_account_url and config.state_container
        return BlobStateStore(
            config.state_account_url, config.state_container, config.state_blob
        )
    return StateStore(config.state_file, config.lock_file)


class Reconciler:
    """Drives desired policy state into Azure through the state file.

    The state file is the only view of live state this class uses: plans
    never read Azure, so N applies of the same stack converge after the first.
    """

    def __init__(self, config: Config, *, store: StateBackend | None = None) -> None:
        """Initialize the driver.

        Args:
            config: Validated configuration.
            store: State backend; defaults to the one the configuration selects.
        """
        self._config = config
        self._store = store or open_state_store(config)
        self._credentials: Credentials | None = None
        self._credential: Any = None
        self._clients: dict[str, PolicyClient] = {}

    @property
    def config(self) -> Config:
        return self._config

    @property
    def store(self) -> StateBackend:
        return self._store

    @property
    def initialized(self) -> bool:
        return self._credential is not None

    # -------------------------------------------------------------------------
    # init
    # -------------------------------------------------------------------------

    def init(self) -> StateSnapshot:
        """Resolve credentials and initialise the state backend.

        Raises:
            AuthenticationError: If any credential is missing or rejected.
            StateError: If an existing state file is corrupt.
        """
        self._credentials = Credentials.from_env()
        self._credential = get_client_secret_credential(
            self._credentials, verify=self._config.verify_credentials
        )
        self._clients.clear()
        snapshot = self._store.initialize()

        logger.info(
            "Initialized",
            extra={
                "state_location": self._store.location,
                "serial": snapshot.serial,
                "managed_resources": len(snapshot.resources),
            },
        )
        return snapshot

    # -------------------------------------------------------------------------
    # validate / plan
    # -------------------------------------------------------------------------

    @property
    def default_scope(self) -> str | None:
        if self._config.default_scope:
            return self._config.default_scope
        if self._credentials:
            return f"/subscriptions/{self._credentials.subscription_id.lower()}"
        return None

    def load_desired(self) -> list[DesiredResource]:
        """Load the stack and resolve it into desired resources.

        Raises:
            PolicyDocumentError: On parse or schema problems.
            DependencyOrderingError: On unresolved definition references.
        """
        stack = load_stack(self._config.stack_file)
        return build_desired_resources(stack, self.default_scope)

    def validate(self) -> ValidationReport:
        """Check the stack and its documents without touching state or Azure."""
        report = ValidationReport()
        try:
            desired = self.load_desired()
        except (PolicyDocumentError, DependencyOrderingError) as e:
            report.errors.extend(e.errors)
        else:
            report.definitions = sum(1 for r in desired if r.kind == ResourceKind.DEFINITION)
            report.assignments = sum(1 for r in desired if r.kind == ResourceKind.ASSIGNMENT)

        if report.ok:
            logger.info("Validation succeeded", extra=report.to_dict())
        else:
            logger.error("Validation failed", extra=report.to_dict())
        return report

    def plan(self, *, destroy: bool = False) -> Plan:
        """Compute the changes needed to converge recorded state.

        Raises:
            PolicyDocumentError, DependencyOrderingError: If the stack is invalid.
            StateError: If the state is missing or corrupt.
        """
        desired = [] if destroy else self.load_desired()
        return compute_plan(desired, self._store.read(), destroy=destroy)

    # -------------------------------------------------------------------------
    # apply
    # -------------------------------------------------------------------------

    def apply(self, plan: Plan | None = None, *, destroy: bool = False) -> ApplyResult:
        """Apply a plan under the state lock.

        Args:
            plan: A saved plan; when None, a fresh plan is computed under the lock.
            destroy: Compute a destroy plan (ignored when plan is given).

        Returns:
            ApplyResult listing the addresses written.

        Raises:
            NotInitializedError: If init() has not run.
            LockContentionError: If another run holds the state lock.
            StalePlanError: If a saved plan no longer matches state.
            AuthorizationError, AuthenticationError, DependencyOrderingError, ApplyError:
                On the first failing write.
        """
        if not self.initialized:
            raise NotInitializedError("Driver is not initialized; run init first")

        desired = None if plan is not None or destroy else self.load_desired()

        with self._store.transaction("apply") as txn:
            if plan is None:
                plan = compute_plan(desired or [], txn.snapshot, destroy=destroy)
            elif (plan.lineage, plan.serial) != (txn.snapshot.lineage, txn.snapshot.serial):
                raise StalePlanError(
                    f"Saved plan is stale: it was computed against state "
                    f"{plan.lineage}@{plan.serial}, current state is "
                    f"{txn.snapshot.lineage}@{txn.snapshot.serial}"
                )

            result = ApplyResult(plan=plan, serial=txn.snapshot.serial)

            if plan.is_empty:
                logger.info("No changes. Live state matches the declared stack.")
                result.end_time = datetime.now(UTC)
                return result

            logger.info("Applying plan", extra=plan.summary())

            moves = plan.moves()
            for change in moves:
                logger.info(
                    "Moving state record",
                    extra={"address": change.address, "prior_address": change.prior_address},
                )
                self._store_record(txn.snapshot, change)
                result.applied.append(change.address)
            if moves:
                result.serial = txn.commit()

            for operation in plan.operations():
                self._execute(operation)
                self._record(txn.snapshot, operation)
                result.serial = txn.commit()
                result.applied.append(operation.change.address)

            result.end_time = datetime.now(UTC)

        logger.info(
            "Apply complete",
            extra={
                "serial": result.serial,
                "writes": len(result.applied),
                "duration_seconds": result.duration_seconds,
                **plan.summary(),
            },
        )
        return result

    def destroy(self) -> ApplyResult:
        """Delete every managed resource recorded in state."""
        return self.apply(destroy=True)

    def _record(self, snapshot: StateSnapshot, operation: Operation) -> None:
        change = operation.change
        if operation.type == OperationType.PUT:
            self._store_record(snapshot, change)
        elif change.action == ChangeAction.DELETE:
            snapshot.resources.pop(change.address, None)

    def _store_record(self, snapshot: StateSnapshot, change: ResourceChange) -> None:
        assert change.after is not None
        snapshot.resources[change.address] = ResourceRecord(
            address=change.address,
            kind=change.kind,
            resource_id=change.resource_id,
            name=change.name,
            scope=change.scope,
            attributes=change.after,
            depends_on=list(change.depends_on),
        )

        prior = change.prior_address
        if prior is None or prior == change.address:
            return
        stale = snapshot.resources.get(prior)
        # The prior address may already hold a different resource in a swap
        if stale is not None and stale.resource_id.lower() == change.resource_id.lower():
            del snapshot.resources[prior]
        for record in snapshot.resources.values():
            record.depends_on = [
                change.address if dep == prior else dep for dep in record.depends_on
            ]

    # -------------------------------------------------------------------------
    # Azure writes
    # -------------------------------------------------------------------------

    def _client(self, subscription_id: str | None = None) -> PolicyClient:
        assert self._credentials is not None
        subscription_id = subscription_id or self._credentials.subscription_id
        if subscription_id not in self._clients:
            self._clients[subscription_id] = PolicyClient(
                credential=self._credential,
                subscription_id=subscription_id,
            )
        return self._clients[subscription_id]

    def _execute(self, operation: Operation) -> None:
        change = operation.change
        target = operation.target_id
        logger.info(
            "Writing resource",
            extra={
                "address": change.address,
                "action": change.action.value,
                "operation": operation.type.value,
                "resource_id": target,
            },
        )

        try:
            if change.kind == ResourceKind.DEFINITION.value:
                if operation.type == OperationType.PUT:
                    self._put_definition(change.scope, change.name, change.after or {})
                else:
                    self._delete_definition(target)
            elif operation.type == OperationType.PUT:
                self._put_assignment(change.scope, change.name, change.after or {})
            else:
                self._delete_assignment(target)
        except ResourceNotFoundError as e:
            if operation.type == OperationType.DELETE:
                # Already gone; the desired outcome holds
                logger.warning(
                    "Resource already deleted", extra={"resource_id": target, "error": e.message}
                )
                return
            if change.kind == ResourceKind.ASSIGNMENT.value:
                definition = (change.after or {}).get("policyDefinitionId")
                raise DependencyOrderingError(
                    f"{change.address}: policy definition {definition} does not exist: "
                    f"{e.message}"
                ) from e
            raise ApplyError(f"{change.address}: {e.message}") from e
        except ClientAuthenticationError as e:
            raise AuthenticationError(f"{change.address}: {e.message}") from e
        except HttpResponseError as e:
            if e.status_code in (401, 403):
                log_security_audit_event(
                    "authorization_denied",
                    target_resource=target,
                    action=operation.type.value,
                    result="denied",
                )
                raise AuthorizationError(
                    f"{change.address}: authorization failed at scope {change.scope}: "
                    f"{e.message}"
                ) from e
            raise ApplyError(f"{change.address}: {e.message}") from e
        except AzureError as e:
            raise ApplyError(f"{change.address}: {e.message}") from e

        log_security_audit_event(
            "policy_write",
            target_resource=target,
            action=f"{operation.type.value}:{change.action.value}",
            result="success",
        )

    def _put_definition(self, scope: str, name: str, attributes: dict[str, Any]) -> None:
        definition = PolicyDefinition(
            policy_type=attributes.get("policyType"),
            mode=attributes.get("mode"),
            display_name=attributes.get("displayName"),
            description=attributes.get("description") or None,
            policy_rule=attributes.get("policyRule"),
            metadata=attributes.get("metadata") or None,
            parameters=attributes.get("parameters") or None,
        )
        if scope_kind(scope) == ScopeKind.MANAGEMENT_GROUP:
            self._client().policy_definitions.create_or_update_at_management_group(
                policy_definition_name=name,
                management_group_id=_management_group_name(scope),
                parameters=definition,
            )
        else:
            self._client(_scope_subscription(scope)).policy_definitions.create_or_update(
                policy_definition_name=name,
                parameters=definition,
            )

    def _delete_definition(self, resource_id: str) -> None:
        scope, _, name = resource_id.rpartition(
            "/providers/Microsoft.Authorization/policyDefinitions/"
        )
        if MANAGEMENT_GROUP_SCOPE_PATTERN.match(scope):
            self._client().policy_definitions.delete_at_management_group(
                policy_definition_name=name,
                management_group_id=_management_group_name(scope),
            )
        else:
            self._client(_scope_subscription(scope)).policy_definitions.delete(
                policy_definition_name=name,
            )

    def _put_assignment(self, scope: str, name: str, attributes: dict[str, Any]) -> None:
        assignment = PolicyAssignment(
            display_name=attributes.get("displayName"),
            description=attributes.get("description") or None,
            policy_definition_id=attributes.get("policyDefinitionId"),
            enforcement_mode=attributes.get("enforcementMode"),
            parameters=attributes.get("parameters") or None,
            not_scopes=attributes.get("notScopes") or None,
        )
        self._client().policy_assignments.create(
            scope=scope,
            policy_assignment_name=name,
            parameters=assignment,
        )

    def _delete_assignment(self, resource_id: str) -> None:
        scope, _, name = resource_id.rpartition(
            "/providers/Microsoft.Authorization/policyAssignments/"
        )
        self._client().policy_assignments.delete(scope=scope, policy_assignment_name=name)

    # -------------------------------------------------------------------------
    # state maintenance
    # -------------------------------------------------------------------------

    def show(self) -> StateSnapshot:
        """Return the recorded state."""
        return self._store.read()

    def force_unlock(self, lock_id: str) -> None:
        """Release a stale state lock left behind by a cancelled run."""
        self._store.force_unlock(lock_id)
