"""Two-phase CI gate as an explicit state machine.

    idle ──pull_request→main──▶ validating ──▶ validated | rejected
    idle ──push→main──────────▶ applying   ──▶ applied   | failed

A pull request may only enter `validating`; a push to main may only enter
`applying`. Any other event leaves the run idle (skipped). There is no
transition from `validated` to `applying`: merging is the trigger, and that
is a human or branch-protection decision, not the pipeline's.

Every path is a fixed linear sequence of steps. The first failing step halts
the run (fail-stop); its error text is recorded verbatim.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .document_loader import PolicyDocumentError
from .plan import Plan
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

DEFAULT_MAIN_BRANCH = "main"
BRANCH_REF_PREFIX = "refs/heads/"


class PipelineState(str, Enum):
    """States of one pipeline run."""

    IDLE = "idle"
    VALIDATING = "validating"
    VALIDATED = "validated"
    REJECTED = "rejected"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.VALIDATING, PipelineState.APPLYING}),
    PipelineState.VALIDATING: frozenset({PipelineState.VALIDATED, PipelineState.REJECTED}),
    PipelineState.APPLYING: frozenset({PipelineState.APPLIED, PipelineState.FAILED}),
}

SUCCESS_STATES: frozenset[PipelineState] = frozenset({
    PipelineState.IDLE,
    PipelineState.VALIDATED,
    PipelineState.APPLIED,
})


class TriggerKind(str, Enum):
    """Events that can start a run."""

    PULL_REQUEST = "pull_request"
    PUSH = "push"
    OTHER = "other"


class StepName(str, Enum):
    """Pipeline steps, in the order they can run."""

    INIT = "init"
    VALIDATE = "validate"
    PLAN = "plan"
    APPLY = "apply"


VALIDATE_PATH: tuple[StepName, ...] = (StepName.INIT, StepName.VALIDATE, StepName.PLAN)
APPLY_PATH: tuple[StepName, ...] = (
    StepName.INIT,
    StepName.VALIDATE,
    StepName.PLAN,
    StepName.APPLY,
)


class InvalidTransitionError(Exception):
    """Raised when code attempts a transition the state machine forbids."""

    pass


def _branch_from_ref(ref: str) -> str:
    return ref[len(BRANCH_REF_PREFIX):] if ref.startswith(BRANCH_REF_PREFIX) else ref


@dataclass(frozen=True)
class TriggerEvent:
    """The event a run reacts to.

    For pull requests `target_branch` is the base branch; for pushes it is
    the branch pushed to.
    """

    kind: TriggerKind
    target_branch: str
    sha: str = ""

    @classmethod
    def from_github_env(cls, env: Mapping[str, str] | None = None) -> TriggerEvent:
        """Build an event from the GitHub Actions environment.

        Uses GITHUB_EVENT_NAME, GITHUB_BASE_REF (pull requests),
        GITHUB_REF (pushes) and GITHUB_SHA.
        """
        env = os.environ if env is None else env
        name = env.get("GITHUB_EVENT_NAME", "")

        if name in ("pull_request", "pull_request_target"):
            kind = TriggerKind.PULL_REQUEST
            branch = env.get("GITHUB_BASE_REF", "")
        elif name == "push":
            kind = TriggerKind.PUSH
            branch = _branch_from_ref(env.get("GITHUB_REF", ""))
        else:
            kind = TriggerKind.OTHER
            branch = _branch_from_ref(env.get("GITHUB_REF", ""))

        return cls(kind=kind, target_branch=branch, sha=env.get("GITHUB_SHA", ""))

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "target_branch": self.target_branch, "sha": self.sha}


@dataclass
class StepResult:
    """Outcome of one step."""

    step: StepName
    success: bool
    started_at: datetime
    finished_at: datetime
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step.value,
            "success": self.success,
            "duration_seconds": self.duration_seconds,
            "output": self.output,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class PipelineRun:
    """One run of the pipeline and the path it took."""

    event: TriggerEvent
    state: PipelineState = PipelineState.IDLE
    steps: list[StepResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    def transition(self, target: PipelineState) -> None:
        """Move to `target` if the state machine allows it.

        Raises:
            InvalidTransitionError: For any transition not in ALLOWED_TRANSITIONS.
        """
        allowed = ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {self.state.value} to {target.value}"
            )
        logger.info(
            "Pipeline transition",
            extra={"from_state": self.state.value, "to_state": target.value},
        )
        self.state = target

    @property
    def skipped(self) -> bool:
        return self.state == PipelineState.IDLE

    @property
    def succeeded(self) -> bool:
        return self.state in SUCCESS_STATES

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    @property
    def failed_step(self) -> StepResult | None:
        return next((s for s in self.steps if not s.success), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.to_dict(),
            "state": self.state.value,
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [s.to_dict() for s in self.steps],
        }

    def to_markdown(self) -> str:
        """Render a short summary for the job summary page."""
        lines = [
            f"### Policy pipeline: {self.state.value}",
            "",
            f"Event: `{self.event.kind.value}` on `{self.event.target_branch or '-'}`",
            "",
        ]
        if self.skipped:
            lines.append("No path applies to this event; nothing ran.")
            return "\n".join(lines) + "\n"

        lines += ["| Step | Result | Seconds |", "| --- | --- | --- |"]
        for step in self.steps:
            status = "ok" if step.success else "failed"
            lines.append(f"| {step.step.value} | {status} | {step.duration_seconds:.1f} |")

        failed = self.failed_step
        if failed is not None:
            lines += ["", f"**{failed.step.value} failed** ({failed.error_type}):", "", "```"]
            lines.append(failed.error or "")
            lines.append("```")
        return "\n".join(lines) + "\n"


class Pipeline:
    """Routes an event to its path and runs the steps fail-stop."""

    def __init__(
        self,
        reconciler_factory: Callable[[], Reconciler],
        *,
        main_branch: str = DEFAULT_MAIN_BRANCH,
    ) -> None:
        self._reconciler_factory = reconciler_factory
        self._main_branch = main_branch

    def route(self, event: TriggerEvent) -> PipelineState | None:
        """Pick the path for an event, or None when no path applies."""
        if event.target_branch != self._main_branch:
            return None
        if event.kind == TriggerKind.PULL_REQUEST:
            return PipelineState.VALIDATING
        if event.kind == TriggerKind.PUSH:
            return PipelineState.APPLYING
        return None

    def run(self, event: TriggerEvent) -> PipelineRun:
        """Run the path the event selects."""
        run = PipelineRun(event=event)
        path_state = self.route(event)

        if path_state is None:
            logger.info("No pipeline path for event; skipping", extra=event.to_dict())
            run.finished_at = datetime.now(UTC)
            return run

        run.transition(path_state)
        if path_state == PipelineState.VALIDATING:
            steps, success, failure = VALIDATE_PATH, PipelineState.VALIDATED, PipelineState.REJECTED
        else:
            steps, success, failure = APPLY_PATH, PipelineState.APPLIED, PipelineState.FAILED

        reconciler = self._reconciler_factory()
        context: dict[str, Any] = {}

        for step in steps:
            result = self._run_step(step, reconciler, context)
            run.steps.append(result)
            if not result.success:
                run.transition(failure)
                break
        else:
            run.transition(success)

        run.finished_at = datetime.now(UTC)
        log = logger.info if run.succeeded else logger.error
        log("Pipeline finished", extra=run.to_dict())
        return run

    def _run_step(
        self,
        step: StepName,
        reconciler: Reconciler,
        context: dict[str, Any],
    ) -> StepResult:
        started = datetime.now(UTC)
        logger.info("Step started", extra={"step": step.value})
        try:
            output = self._dispatch(step, reconciler, context)
        except Exception as e:
            finished = datetime.now(UTC)
            logger.error(
                "Step failed",
                extra={"step": step.value, "error": str(e), "error_type": type(e).__name__},
            )
            return StepResult(
                step=step,
                success=False,
                started_at=started,
                finished_at=finished,
                error=str(e),
                error_type=type(e).__name__,
            )

        return StepResult(
            step=step,
            success=True,
            started_at=started,
            finished_at=datetime.now(UTC),
            output=output,
        )

    def _dispatch(
        self,
        step: StepName,
        reconciler: Reconciler,
        context: dict[str, Any],
    ) -> dict[str, Any]:
        match step:
            case StepName.INIT:
                snapshot = reconciler.init()
                return {"serial": snapshot.serial, "managed_resources": len(snapshot.resources)}

            case StepName.VALIDATE:
                report = reconciler.validate()
                if not report.ok:
                    raise PolicyDocumentError(
                        "Validation failed:\n  - " + "\n  - ".join(report.errors), report.errors
                    )
                return report.to_dict()

            case StepName.PLAN:
                plan = reconciler.plan()
                context["plan"] = plan
                return {"empty": plan.is_empty, **plan.summary()}

            case StepName.APPLY:
                # Apply exactly what the plan step showed; a concurrent change makes it stale
                saved: Plan = context["plan"]
                result = reconciler.apply(saved)
                return {
                    "serial": result.serial,
                    "applied": result.applied,
                    "duration_seconds": result.duration_seconds,
                }

        raise InvalidTransitionError(f"Unknown step: {step}")
