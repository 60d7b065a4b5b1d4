from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional

from .coordinator import Mutation, MutationCoordinator, MutationResult
from .errors import ValidationFailed
from .schemas import Application, Stage
from .settings import settings
from .store import APPLICATIONS


class TransitionPolicy(str, Enum):
    STRICT = "strict"
    PERMISSIVE = "permissive"  # board drag-and-drop: any other stage


TRANSITIONS: Dict[Stage, FrozenSet[Stage]] = {
    Stage.SAVED: frozenset({Stage.APPLIED, Stage.WITHDRAWN}),
    Stage.APPLIED: frozenset({Stage.INTERVIEW, Stage.OFFER, Stage.REJECTED, Stage.WITHDRAWN}),
    Stage.INTERVIEW: frozenset({Stage.OFFER, Stage.REJECTED, Stage.WITHDRAWN}),
    Stage.OFFER: frozenset({Stage.REJECTED, Stage.WITHDRAWN}),
    Stage.REJECTED: frozenset(),
    Stage.WITHDRAWN: frozenset(),
}


def allowed_targets(stage: Stage) -> FrozenSet[Stage]:
    return TRANSITIONS.get(Stage(stage), frozenset())


def is_terminal(stage: Stage) -> bool:
    return not allowed_targets(stage)


def check_transition(current: Stage, target: Stage, policy: TransitionPolicy = TransitionPolicy.STRICT) -> None:
    """Raise ValidationFailed if ``current -> target`` may not be requested."""
    current, target = Stage(current), Stage(target)
    if current is target:
        raise ValidationFailed("Stage is already set to that value.")
    if TransitionPolicy(policy) is TransitionPolicy.STRICT and target not in allowed_targets(current):
        raise ValidationFailed(f"Cannot move from {current.value} to {target.value}.")


class StageLifecycle:
    def __init__(self, coordinator: MutationCoordinator, policy: Optional[TransitionPolicy] = None) -> None:
        self.coordinator = coordinator
        self.policy = TransitionPolicy(policy or settings.lifecycle.get("policy", "strict"))

    @property
    def store(self):
        return self.coordinator.store

    async def request_transition(
        self,
        application_id: int,
        next_stage: Stage,
        policy: Optional[TransitionPolicy] = None,
    ) -> MutationResult:
        """Move an application to ``next_stage`` optimistically.

        Validation failures are raised before anything changes. Otherwise the
        result reports whether the server confirmed, rejected (rolled back), or
        left the outcome unknown (kept and reconciling).
        """
        next_stage = Stage(next_stage)
        effective = TransitionPolicy(policy or self.policy)
        current = self.store.find_application(application_id)
        if current is None:
            raise ValidationFailed("Application not found.")
        try:
            check_transition(current.stage, next_stage, effective)
        except ValidationFailed as e:
            if self.coordinator.journal is not None:
                self.coordinator.journal.log_event(
                    "transition.rejected",
                    "error",
                    {"application_id": application_id, "from": current.stage.value, "to": next_stage.value, "error": str(e)},
                )
            raise

        now = self.coordinator.clock()

        def apply() -> None:
            self.store.apply_local(
                APPLICATIONS,
                lambda a: a.id == application_id,
                lambda a: a.model_copy(
                    update={"stage": next_stage, "stage_changed_at": now, "last_touch_at": now, "updated_at": now}
                ),
            )

        def reconcile(updated: Application) -> None:
            self.store.upsert_local(APPLICATIONS, updated)

        return await self.coordinator.run(
            Mutation(
                name="application.transition",
                touches={APPLICATIONS: {application_id}},
                apply=apply,
                remote=lambda: self.coordinator.gateway.transition_stage(application_id, next_stage),
                reconcile=reconcile,
                refetch=self.store.reload,
                refreshes=self.coordinator.application_refreshes(application_id, history=True),
                details={
                    "application_id": application_id,
                    "from": current.stage.value,
                    "to": next_stage.value,
                    "policy": effective.value,
                },
            )
        )

    async def move_on_board(self, application_id: int, next_stage: Stage) -> Optional[MutationResult]:
        """Board drop: same stage is a silent no-op; any other stage is accepted."""
        current = self.store.find_application(application_id)
        if current is not None and current.stage is Stage(next_stage):
            return None
        return await self.request_transition(application_id, next_stage, TransitionPolicy.PERMISSIVE)
