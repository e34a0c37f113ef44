"""
Workflow Engine

Per-model state machines: workflow definitions (states + directed
transitions) and the rules for moving a DataObject between states.

Transition rules (``apply_state_change``):
  - model without workflow      → any non-null target rejected
  - target outside the workflow → rejected
  - object without a valid state → any workflow state accepted (bootstrap)
  - target == current          → no-op
  - otherwise an outgoing edge current → target must exist

Transitions are directed; A→B does not imply B→A and there is no implicit
self-loop. A successful change yields a ``__workflowState__`` PropertyChange
so it lands in the same changelog stream as ordinary field edits.

Usage:
    engine = WorkflowEngine(db.session)
    change = engine.apply_state_change(obj, model, target_state_id)
"""

import logging

from sqlalchemy import select

from codex.core.exceptions import (
    ConflictError,
    FieldError,
    InvalidWorkflowTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from codex.models.changelog import (
    WORKFLOW_STATE_FIELD,
    PropertyChange,
    StructuralAction,
    write_structural_change,
)
from codex.models.data_object import DataObject
from codex.models.schema import Model
from codex.models.workflow import Workflow, WorkflowState, WorkflowStateTransition
from codex.utils.helpers import atomic, parse_number

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Workflow definitions and state-change rules."""

    def __init__(self, session):
        self.session = session

    # ── Definitions ───────────────────────────────────────────────────

    def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.session.get(Workflow, workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        return workflow

    def list_workflows(self) -> list[Workflow]:
        return list(self.session.execute(select(Workflow).order_by(Workflow.name)).scalars())

    def upsert_workflow(self, data: dict, states: list[dict], *,
                        workflow_id: str | None = None,
                        actor_id: str | None = None) -> Workflow:
        """
        Create or replace a workflow definition.

        ``states`` items: ``{id?, name, description?, color?, is_initial,
        order_index?, successor_state_names[]}``. Existing state ids are kept
        (matched by id, then by name); transitions are fully replaced. Objects
        sitting in a removed state move to the initial state.
        """
        name = (data.get("name") or "").strip()
        errors = []
        if not name:
            errors.append(FieldError("name", "Workflow name is required", data.get("name")))
        errors.extend(self._check_states(states))
        if errors:
            raise ValidationFailedError(errors)

        with atomic(self.session):
            workflow = self.get_workflow(workflow_id) if workflow_id else None
            clash = self.session.execute(
                select(Workflow.id).where(Workflow.name == name)
            ).scalar()
            if clash and (workflow is None or clash != workflow.id):
                raise ConflictError("Workflow", f"Workflow named '{name}' already exists")

            action = StructuralAction.UPDATE if workflow else StructuralAction.CREATE
            before = workflow.to_dict() if workflow else None
            if workflow is None:
                workflow = Workflow(name=name)
                self.session.add(workflow)
            workflow.name = name
            workflow.description = data.get("description")
            self.session.flush()

            self._replace_states(workflow, states)

            after = workflow.to_dict()
            write_structural_change(
                entity_type="Workflow",
                entity_id=workflow.id,
                entity_name=workflow.name,
                action=action,
                changes=after if before is None else {"before": before, "after": after},
                actor_id=actor_id,
                session=self.session,
            )

        logger.info("Workflow %s %s (%d states)", workflow.id, action.value.lower(),
                    len(workflow.states), extra={"actor_id": actor_id})
        return workflow

    def delete_workflow(self, workflow_id: str, *, actor_id: str | None = None) -> None:
        with atomic(self.session):
            workflow = self.get_workflow(workflow_id)
            users = self.session.execute(
                select(Model.name).where(Model.workflow_id == workflow.id)
            ).scalars().all()
            if users:
                raise ConflictError(
                    "Workflow",
                    f"Workflow '{workflow.name}' is assigned to model(s): {', '.join(users)}",
                )
            snapshot = workflow.to_dict()
            self.session.delete(workflow)
            write_structural_change(
                entity_type="Workflow",
                entity_id=workflow_id,
                entity_name=snapshot["name"],
                action=StructuralAction.DELETE,
                changes=snapshot,
                actor_id=actor_id,
                session=self.session,
            )
        logger.info("Workflow %s deleted", workflow_id, extra={"actor_id": actor_id})

    # ── State rules ───────────────────────────────────────────────────

    @staticmethod
    def initial_state_id(model: Model) -> str | None:
        workflow = model.workflow
        if workflow is None:
            return None
        initial = workflow.initial_state
        return initial.id if initial else None

    def state_name(self, state_id: str | None) -> str | None:
        if state_id is None:
            return None
        state = self.session.get(WorkflowState, state_id)
        return state.name if state else None

    def apply_state_change(self, obj: DataObject, model: Model,
                           target_state_id: str | None) -> PropertyChange | None:
        """
        Validate and apply a state change on ``obj`` (no flush, no commit).

        Returns the ``__workflowState__`` change, or None for a no-op.
        Raises InvalidWorkflowTransitionError citing both state names.
        """
        workflow = model.workflow
        current_id = obj.current_state_id

        if workflow is None:
            if target_state_id is None:
                return None
            raise InvalidWorkflowTransitionError(
                f"Model '{model.name}' has no workflow; state must be empty",
                current_state=None,
                target_state=self.state_name(target_state_id) or target_state_id,
            )

        current = workflow.state_by_id(current_id) if current_id else None

        if target_state_id is None:
            if current is None:
                return None
            raise InvalidWorkflowTransitionError(
                f"State of a '{model.name}' object cannot be cleared while "
                f"workflow '{workflow.name}' is assigned",
                current_state=current.name,
                target_state=None,
            )

        target = workflow.state_by_id(target_state_id)
        if target is None:
            raise InvalidWorkflowTransitionError(
                f"State {target_state_id} is not part of workflow '{workflow.name}'",
                current_state=current.name if current else None,
                target_state=self.state_name(target_state_id) or target_state_id,
            )

        if current is not None:
            if current.id == target.id:
                return None
            if not workflow.has_transition(current.id, target.id):
                logger.warning("Rejected transition %s -> %s on object %s",
                               current.name, target.name, obj.id,
                               extra={"object_id": obj.id, "model_id": model.id})
                raise InvalidWorkflowTransitionError(
                    f"Transition from '{current.name}' to '{target.name}' is not allowed",
                    current_state=current.name,
                    target_state=target.name,
                )

        obj.current_state_id = target.id
        return PropertyChange(
            property_name=WORKFLOW_STATE_FIELD,
            old_value=current_id,
            new_value=target.id,
            old_label=current.name if current else self.state_name(current_id),
            new_label=target.name,
        )

    def restore_state(self, obj: DataObject, model: Model,
                      state_id: str | None) -> PropertyChange | None:
        """
        Put ``obj`` back into ``state_id`` without requiring a transition
        edge (used by revert). The state must still belong to the model's
        current workflow; null is only valid when the model has no workflow
        or the workflow has no initial state.
        """
        current_id = obj.current_state_id
        if state_id == current_id:
            return None
        workflow = model.workflow
        if state_id is None:
            if workflow is not None and workflow.initial_state is not None:
                raise InvalidWorkflowTransitionError(
                    f"Cannot clear the state while workflow '{workflow.name}' is assigned",
                    current_state=self.state_name(current_id),
                    target_state=None,
                )
        elif workflow is None or workflow.state_by_id(state_id) is None:
            raise InvalidWorkflowTransitionError(
                f"State {state_id} is no longer valid for model '{model.name}'",
                current_state=self.state_name(current_id),
                target_state=self.state_name(state_id) or state_id,
            )

        obj.current_state_id = state_id
        return PropertyChange(
            property_name=WORKFLOW_STATE_FIELD,
            old_value=current_id,
            new_value=state_id,
            old_label=self.state_name(current_id),
            new_label=self.state_name(state_id),
        )

    def is_valid_state(self, model: Model, state_id: str | None) -> bool:
        workflow = model.workflow
        if state_id is None:
            return workflow is None or workflow.initial_state is None
        return workflow is not None and workflow.state_by_id(state_id) is not None

    def recompute_states_for_model(self, model: Model) -> int:
        """
        Reset every object of ``model`` to its workflow's initial state (or
        null). Runs inside the caller's transaction. Returns objects touched.
        """
        target = self.initial_state_id(model)
        objects = self.session.execute(
            select(DataObject).where(DataObject.model_id == model.id)
        ).scalars().all()
        for obj in objects:
            obj.current_state_id = target
        self.session.flush()
        logger.info("Recomputed workflow state for %d object(s) of model %s",
                    len(objects), model.id, extra={"model_id": model.id})
        return len(objects)

    # ── Internals ─────────────────────────────────────────────────────

    @staticmethod
    def _check_states(states: list[dict]) -> list[FieldError]:
        errors = []
        names = [(s.get("name") or "").strip() for s in states]
        if any(not n for n in names):
            errors.append(FieldError("states", "Every state needs a name", None))
        dupes = sorted({n for n in names if n and names.count(n) > 1})
        if dupes:
            errors.append(FieldError("states", "State names must be unique", dupes))
        initial = [s for s in states if s.get("is_initial")]
        if states and len(initial) != 1:
            errors.append(FieldError(
                "states", "Exactly one initial state is required", len(initial),
            ))
        for index, s in enumerate(states):
            parse_number(s.get("order_index"), int, f"states[{index}].order_index",
                         errors, "must be an integer")
        known = set(names)
        for s in states:
            missing = [n for n in s.get("successor_state_names") or [] if n not in known]
            if missing:
                errors.append(FieldError(
                    "states", f"Unknown successor state(s) for '{s.get('name')}'", missing,
                ))
        return errors

    def _replace_states(self, workflow: Workflow, states: list[dict]) -> None:
        existing_by_id = {s.id: s for s in workflow.states}
        existing_by_name = {s.name: s for s in workflow.states}

        # Transitions are rebuilt from scratch.
        workflow.transitions.clear()
        self.session.flush()

        kept, by_name = set(), {}
        for index, item in enumerate(states):
            name = item["name"].strip()
            state = existing_by_id.get(item.get("id")) or existing_by_name.get(name)
            if state is None or state.id in kept:
                state = WorkflowState(workflow=workflow)
                self.session.add(state)
            state.name = name
            state.description = item.get("description")
            state.color = item.get("color")
            state.is_initial = bool(item.get("is_initial"))
            order_index = item.get("order_index")
            state.order_index = index if order_index is None else int(order_index)
            self.session.flush()
            kept.add(state.id)
            by_name[name] = state

        removed = [sid for sid in existing_by_id if sid not in kept]
        if removed:
            initial = next((s for s in by_name.values() if s.is_initial), None)
            model_ids = select(Model.id).where(Model.workflow_id == workflow.id)
            moved = self.session.execute(
                select(DataObject).where(
                    DataObject.model_id.in_(model_ids),
                    DataObject.current_state_id.in_(removed),
                )
            ).scalars().all()
            for obj in moved:
                obj.current_state_id = initial.id if initial else None
            for sid in removed:
                workflow.states.remove(existing_by_id[sid])
            self.session.flush()
            logger.info("Workflow %s: removed %d state(s), moved %d object(s)",
                        workflow.id, len(removed), len(moved))

        for item in states:
            source = by_name[item["name"].strip()]
            for successor in dict.fromkeys(item.get("successor_state_names") or []):
                workflow.transitions.append(WorkflowStateTransition(
                    workflow_id=workflow.id,
                    from_state_id=source.id,
                    to_state_id=by_name[successor].id,
                ))
        self.session.flush()
