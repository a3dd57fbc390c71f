"""Tests for the reconciliation driver against the mocked Policy API."""

from __future__ import annotations

import os
from pathlib import Path
from unittest import mock

import pytest
from azure_mock import TEST_SUBSCRIPTION_ID, MockAzureContext
from azure_mock.policy import MockAssignmentOperations, MockPolicyAssignment, http_error
from conftest import STACK_YAML, write_stack

from policyctl.config import Config
from policyctl.plan import DependencyOrderingError
from policyctl.reconciler import ApplyError, NotInitializedError, Reconciler
from policyctl.security import AuthenticationError, AuthorizationError
from policyctl.state import LockContentionError, StalePlanError

SUB = f"/subscriptions/{TEST_SUBSCRIPTION_ID}"
DEFINITION_ID = f"{SUB}/providers/Microsoft.Authorization/policyDefinitions/allowed-location-eastus"
ASSIGNMENT_ID = f"{SUB}/providers/Microsoft.Authorization/policyAssignments/allowed-location-eastus"

DEF_ADDR = "policy_definition.allowed_location"
ASG_ADDR = "policy_assignment.allowed_location"


def _with_stack(config: Config, tmp_path: Path, stack_yaml: str) -> Config:
    stack_file = write_stack(tmp_path / "variant", stack_yaml)
    return Config(
        stack_file=stack_file,
        state_dir=config.state_dir,
        subscription_id=config.subscription_id,
        log_format=config.log_format,
    )


class TestInit:
    """Tests for Reconciler.init()."""

    def test_creates_state(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            snapshot = Reconciler(config).init()

            assert ctx.credential.get_token_call_count == 1

        assert snapshot.serial == 0
        assert config.state_file.exists()

    def test_missing_credentials(self, config: Config) -> None:
        with MockAzureContext(set_environment=False):
            with mock.patch.dict(os.environ, {}, clear=True):
                with pytest.raises(AuthenticationError) as exc_info:
                    Reconciler(config).init()

        assert "ARM_CLIENT_SECRET" in str(exc_info.value)
        assert not config.state_file.exists()

    def test_rejected_credentials(self, config: Config) -> None:
        with MockAzureContext(fail_auth=True):
            with pytest.raises(AuthenticationError):
                Reconciler(config).init()

    def test_apply_requires_init(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            with pytest.raises(NotInitializedError):
                Reconciler(config).apply()

            assert ctx.state.write_count == 0


class TestValidate:
    """Tests for Reconciler.validate()."""

    def test_valid_stack(self, config: Config) -> None:
        report = Reconciler(config).validate()

        assert report.ok
        assert report.definitions == 1
        assert report.assignments == 1

    def test_collects_errors(self, config: Config, tmp_path: Path) -> None:
        broken = _with_stack(
            config,
            tmp_path,
            STACK_YAML.replace("definition: allowed_location", "definition: nowhere"),
        )
        report = Reconciler(broken).validate()

        assert not report.ok
        assert "nowhere" in report.errors[0]
        assert report.to_dict()["ok"] is False

    def test_does_not_touch_state(self, config: Config) -> None:
        Reconciler(config).validate()
        assert not config.state_file.exists()


class TestApply:
    """Tests for Reconciler.apply()."""

    def test_creates_definition_before_assignment(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            reconciler = Reconciler(config)
            reconciler.init()
            result = reconciler.apply()

            assert [(w.operation, w.resource_id) for w in ctx.state.writes] == [
                ("put", DEFINITION_ID),
                ("put", ASSIGNMENT_ID),
            ]
            assignment = ctx.state.get_assignment(ASSIGNMENT_ID)
            assert assignment is not None
            assert assignment.policy_definition_id == DEFINITION_ID

        assert result.applied == [DEF_ADDR, ASG_ADDR]
        assert result.serial == 2
        snapshot = reconciler.show()
        assert set(snapshot.resources) == {DEF_ADDR, ASG_ADDR}
        assert snapshot.resources[DEF_ADDR].resource_id == DEFINITION_ID

    def test_second_apply_is_a_no_op(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            reconciler = Reconciler(config)
            reconciler.init()
            reconciler.apply()
            writes_after_first = ctx.state.write_count

            assert reconciler.plan().is_empty
            second = reconciler.apply()

            assert ctx.state.write_count == writes_after_first

        assert second.changed is False
        assert second.serial == 2

    def test_idempotent_across_fresh_runs(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            first = Reconciler(config)
            first.init()
            first.apply()

            second = Reconciler(config)
            second.init()

            assert second.plan().is_empty
            assert ctx.state.definition_count == 2  # built-in + ours

    def test_update_in_place(self, config: Config, tmp_path: Path) -> None:
        with MockAzureContext() as ctx:
            reconciler = Reconciler(config)
            reconciler.init()
            reconciler.apply()

            changed = _with_stack(
                config,
                tmp_path,
                STACK_YAML + "      enforcementMode: DoNotEnforce\n",
            )
            updater = Reconciler(changed)
            updater.init()
            result = updater.apply()

            assert result.applied == [ASG_ADDR]
            assignment = ctx.state.get_assignment(ASSIGNMENT_ID)
            assert assignment is not None
            assert assignment.enforcement_mode == "DoNotEnforce"

    def test_rename_replaces_create_before_destroy(self, config: Config, tmp_path: Path) -> None:
        with MockAzureContext() as ctx:
            reconciler = Reconciler(config)
            reconciler.init()
            reconciler.apply()
            ctx.state.writes.clear()

            renamed = _with_stack(
                config,
                tmp_path,
                STACK_YAML.replace(
                    "name: allowed-location-eastus\n      displayName: Allowed location (eastus)\n"
                    "      mode",
                    "name: allowed-location-v2\n      displayName: Allowed location (eastus)\n"
                    "      mode",
                ),
            )
            replacer = Reconciler(renamed)
            replacer.init()
            replacer.apply()

            new_id = DEFINITION_ID.replace("allowed-location-eastus", "allowed-location-v2")
            assert [(w.operation, w.resource_id) for w in ctx.state.writes] == [
                ("put", new_id),
                ("put", ASSIGNMENT_ID),
                ("delete", DEFINITION_ID),
            ]
            assert ctx.state.get_definition(DEFINITION_ID) is None
            assert replacer.show().resources[DEF_ADDR].resource_id == new_id

    def test_renamed_key_keeps_live_assignment(self, config: Config, tmp_path: Path) -> None:
        with MockAzureContext() as ctx:
            reconciler = Reconciler(config)
            reconciler.init()
            reconciler.apply()
            ctx.state.writes.clear()

            rekeyed = _with_stack(
                config,
                tmp_path,
                STACK_YAML.replace(
                    "  assignments:\n    allowed_location:", "  assignments:\n    eastus_only:"
                ),
            )
            mover = Reconciler(rekeyed)
            mover.init()
            result = mover.apply()

            assert ctx.state.writes == []
            assert ctx.state.get_assignment(ASSIGNMENT_ID) is not None
            assert result.applied == ["policy_assignment.eastus_only"]
            assert sorted(mover.show().resources) == [DEF_ADDR, "policy_assignment.eastus_only"]
            assert mover.plan().is_empty

    def test_renamed_definition_key_repoints_dependents(
        self, config: Config, tmp_path: Path
    ) -> None:
        with MockAzureContext() as ctx:
            reconciler = Reconciler(config)
            reconciler.init()
            reconciler.apply()

            rekeyed = _with_stack(
                config,
                tmp_path,
                STACK_YAML.replace(
                    "  definitions:\n    allowed_location:", "  definitions:\n    location_rule:"
                ).replace("definition: allowed_location", "definition: location_rule"),
            )
            mover = Reconciler(rekeyed)
            mover.init()
            mover.apply()

            assert ctx.state.get_definition(DEFINITION_ID) is not None
            resources = mover.show().resources
            assert DEF_ADDR not in resources
            assert resources[ASG_ADDR].depends_on == ["policy_definition.location_rule"]

            # Destroy still removes the assignment before its definition
            ctx.state.writes.clear()
            mover.destroy()
            assert [w.operation for w in ctx.state.writes] == ["delete", "delete"]
            assert ctx.state.writes[0].resource_id == ASSIGNMENT_ID

    def test_saved_plan(self, config: Config) -> None:
        with MockAzureContext():
            reconciler = Reconciler(config)
            reconciler.init()
            saved = reconciler.plan()
            result = reconciler.apply(saved)

        assert result.applied == [DEF_ADDR, ASG_ADDR]

    def test_stale_saved_plan_rejected(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            reconciler = Reconciler(config)
            reconciler.init()
            saved = reconciler.plan()
            reconciler.apply()
            writes = ctx.state.write_count

            with pytest.raises(StalePlanError) as exc_info:
                reconciler.apply(saved)

            assert ctx.state.write_count == writes

        assert "stale" in str(exc_info.value)
        assert reconciler.store.lock_holder() is None

    def test_lock_held_fails_fast_without_calls(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            reconciler = Reconciler(config)
            reconciler.init()
            before = config.state_file.read_text()
            holder = reconciler.store.lock("apply")

            with pytest.raises(LockContentionError) as exc_info:
                reconciler.apply()

            assert ctx.state.write_count == 0
            assert ctx.client_factory is not None
            assert ctx.client_factory.call_count == 0

        assert exc_info.value.lock_info is not None
        assert exc_info.value.lock_info.id == holder.id
        assert config.state_file.read_text() == before

    def test_missing_definition_id_fails_deterministically(
        self, config: Config, tmp_path: Path
    ) -> None:
        missing = "/providers/Microsoft.Authorization/policyDefinitions/00000000-dead-beef-0000-000000000000"
        only_assignment = (
            "assignments:\n"
            "  orphan:\n"
            "    name: orphan\n"
            "    displayName: Orphan\n"
            f"    definition: {missing}\n"
        )
        orphan = _with_stack(config, tmp_path, only_assignment)

        with MockAzureContext() as ctx:
            reconciler = Reconciler(orphan)
            reconciler.init()
            messages = []
            for _ in range(2):
                with pytest.raises(DependencyOrderingError) as exc_info:
                    reconciler.apply()
                messages.append(str(exc_info.value))

            assert ctx.state.assignment_count == 0

        assert messages[0] == messages[1]
        assert missing in messages[0]
        assert reconciler.show().serial == 0

    def test_forbidden_scope_raises_authorization_error(self, config: Config) -> None:
        with MockAzureContext(denied_scopes=[SUB]) as ctx:
            reconciler = Reconciler(config)
            reconciler.init()

            with pytest.raises(AuthorizationError) as exc_info:
                reconciler.apply()

            assert ctx.state.write_count == 0

        assert "authorization failed" in str(exc_info.value)
        assert reconciler.show().resources == {}

    def test_fail_stop_records_completed_writes(self, config: Config, tmp_path: Path) -> None:
        rg_scope = f"{SUB}/resourceGroups/rg-locked"
        scoped = _with_stack(config, tmp_path, STACK_YAML + f"      scope: {rg_scope}\n")

        with MockAzureContext(denied_scopes=[rg_scope]) as ctx:
            reconciler = Reconciler(scoped)
            reconciler.init()

            with pytest.raises(AuthorizationError):
                reconciler.apply()

            assert ctx.state.write_count == 1

        snapshot = reconciler.show()
        assert set(snapshot.resources) == {DEF_ADDR}
        assert snapshot.serial == 1
        assert reconciler.store.lock_holder() is None

    def test_unexpected_rejection_raises_apply_error(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            reconciler = Reconciler(config)
            reconciler.init()
            reconciler.apply()

            # Out-of-band assignment keeps the definition in use
            ctx.state.put_assignment(
                MockPolicyAssignment(
                    id=f"{SUB}/providers/Microsoft.Authorization/policyAssignments/manual",
                    name="manual",
                    scope=SUB,
                    policy_definition_id=DEFINITION_ID,
                )
            )

            with pytest.raises(ApplyError) as exc_info:
                reconciler.destroy()

        assert "PolicyDefinitionInUse" in str(exc_info.value)
        assert set(reconciler.show().resources) == {DEF_ADDR}


class TestDestroy:
    """Tests for Reconciler.destroy()."""

    def test_deletes_assignment_then_definition(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            reconciler = Reconciler(config)
            reconciler.init()
            reconciler.apply()
            ctx.state.writes.clear()

            result = reconciler.destroy()

            assert [(w.operation, w.resource_id) for w in ctx.state.writes] == [
                ("delete", ASSIGNMENT_ID),
                ("delete", DEFINITION_ID),
            ]
            assert ctx.state.assignment_count == 0

        assert result.plan.destroy is True
        assert reconciler.show().resources == {}

    def test_already_deleted_is_ignored(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            reconciler = Reconciler(config)
            reconciler.init()
            reconciler.apply()

            # Someone removed the assignment by hand
            ctx.state.remove_assignment(ASSIGNMENT_ID)
            gone = http_error(404, "PolicyAssignmentNotFound", "not found")
            with mock.patch.object(MockAssignmentOperations, "delete", side_effect=gone):
                reconciler.destroy()

        assert reconciler.show().resources == {}

    def test_destroy_on_empty_state(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            reconciler = Reconciler(config)
            reconciler.init()
            result = reconciler.destroy()

            assert ctx.state.write_count == 0

        assert result.plan.is_empty


class TestForceUnlock:
    """Tests for Reconciler.force_unlock()."""

    def test_releases_stale_lock(self, config: Config) -> None:
        with MockAzureContext():
            reconciler = Reconciler(config)
            reconciler.init()
            stale = reconciler.store.lock("apply")

            reconciler.force_unlock(stale.id)
            result = reconciler.apply()

        assert result.serial == 2
