"""
Codex Structure
Workflow domain models: per-model state machines.

Models:
    - Workflow: named state machine, optionally assigned to Models.
    - WorkflowState: a state; exactly one per workflow is initial.
    - WorkflowStateTransition: directed edge between two states.
"""

from codex.models import _uuid, db

__all__ = ["Workflow", "WorkflowState", "WorkflowStateTransition"]


class Workflow(db.Model):
    __tablename__ = "workflows"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)

    states = db.relationship(
        "WorkflowState",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowState.order_index",
    )
    transitions = db.relationship(
        "WorkflowStateTransition",
        cascade="all, delete-orphan",
        lazy="select",
    )

    @property
    def initial_state(self):
        for state in self.states:
            if state.is_initial:
                return state
        return None

    def state_by_id(self, state_id):
        for state in self.states:
            if state.id == state_id:
                return state
        return None

    def has_transition(self, from_state_id, to_state_id):
        return any(
            t.from_state_id == from_state_id and t.to_state_id == to_state_id
            for t in self.transitions
        )

    def to_dict(self):
        successors = {}
        for t in self.transitions:
            successors.setdefault(t.from_state_id, []).append(t.to_state_id)
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "states": [
                {**s.to_dict(), "successor_state_ids": successors.get(s.id, [])}
                for s in self.states
            ],
        }

    def __repr__(self):
        return f"<Workflow {self.name}>"


class WorkflowState(db.Model):
    __tablename__ = "workflow_states"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "name", name="uq_wf_state_name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workflow_id = db.Column(
        db.String(36),
        db.ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    color = db.Column(db.String(20), nullable=True)
    is_initial = db.Column(db.Boolean, nullable=False, default=False)
    order_index = db.Column(db.Integer, nullable=False, default=0)

    workflow = db.relationship("Workflow", back_populates="states")

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "is_initial": self.is_initial,
            "order_index": self.order_index,
        }

    def __repr__(self):
        return f"<WorkflowState {self.name}>"


class WorkflowStateTransition(db.Model):
    __tablename__ = "workflow_state_transitions"
    __table_args__ = (
        db.UniqueConstraint(
            "workflow_id", "from_state_id", "to_state_id", name="uq_wf_transition",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workflow_id = db.Column(
        db.String(36),
        db.ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_state_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_states.id", ondelete="CASCADE"),
        nullable=False,
    )
    to_state_id = db.Column(
        db.String(36),
        db.ForeignKey("workflow_states.id", ondelete="CASCADE"),
        nullable=False,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "from_state_id": self.from_state_id,
            "to_state_id": self.to_state_id,
        }
