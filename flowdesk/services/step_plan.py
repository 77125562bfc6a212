"""
Step plan: closed set of workflow step kinds, resolved once per workflow.

A workflow's ``steps`` JSON is compiled into an ordered ``WorkflowPlan`` whose
entries carry the step's ``StepKind`` and the handler output describing how
the coordinator takes part in that step (which engine callback it uses, what
review it opens). Unknown kinds fail at compile time, not mid-execution.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum

from flask import current_app

from flowdesk.ai.step_executor import Blueprint
from flowdesk.core.exceptions import NotFoundError, ValidationError
from flowdesk.models import db, iso
from flowdesk.models.workflow import Workflow

logger = logging.getLogger(__name__)

ENGINE_PREFIX = "/api/v1/engine"


class StepKind(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    DECISION = "decision"
    END = "end"
    SUBWORKFLOW = "subworkflow"


@dataclass(frozen=True)
class PlannedStep:
    position: int
    step_id: str
    label: str
    kind: StepKind
    callback: str | None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "position": self.position,
            "stepId": self.step_id,
            "label": self.label,
            "kind": self.kind.value,
            "callback": self.callback,
            "details": self.details,
        }


@dataclass(frozen=True)
class WorkflowPlan:
    workflow_id: str
    steps: tuple

    @property
    def review_steps(self) -> list:
        return [s for s in self.steps if s.callback == f"{ENGINE_PREFIX}/review-request"]

    def to_dict(self) -> dict:
        return {
            "workflowId": self.workflow_id,
            "stepCount": len(self.steps),
            "reviewStepCount": len(self.review_steps),
            "steps": [s.to_dict() for s in self.steps],
        }


# ── Handlers (one per kind) ──────────────────────────────────────────────────

def _requirements(step: dict) -> dict:
    req = step.get("requirements")
    return req if isinstance(req, dict) else {}


def _assignee(step: dict) -> str:
    assigned = step.get("assignedTo")
    if isinstance(assigned, dict) and assigned.get("type") in ("ai", "human"):
        return assigned["type"]
    return "ai"


def _trigger(step: dict):
    req = _requirements(step)
    return None, {"triggerType": req.get("triggerType") or "manual"}


def _action(step: dict):
    if _assignee(step) == "human":
        return f"{ENGINE_PREFIX}/review-request", {"reviewType": "approval"}
    blueprint = Blueprint.parse(_requirements(step).get("blueprint"))
    return f"{ENGINE_PREFIX}/ai-action", blueprint.to_dict()


def _decision(step: dict):
    req = _requirements(step)
    conditions = req.get("conditions") or []
    if req.get("useAIForDecision"):
        return f"{ENGINE_PREFIX}/ai-action", {"conditionCount": len(conditions)}
    return f"{ENGINE_PREFIX}/review-request", {
        "reviewType": "decision",
        "conditionCount": len(conditions),
    }


def _end(step: dict):
    return f"{ENGINE_PREFIX}/execution-complete", {}


def _subworkflow(step: dict):
    req = _requirements(step)
    sub_id = req.get("subWorkflowId")
    if not sub_id:
        raise ValidationError(
            "Sub-workflow step requires requirements.subWorkflowId",
            details={"stepId": step.get("id")},
        )
    return None, {"subWorkflowId": sub_id, "params": req.get("subWorkflowParams") or {}}


HANDLERS = {
    StepKind.TRIGGER: _trigger,
    StepKind.ACTION: _action,
    StepKind.DECISION: _decision,
    StepKind.END: _end,
    StepKind.SUBWORKFLOW: _subworkflow,
}


def _order_key(indexed):
    index, step = indexed
    order = step.get("order")
    return (order if isinstance(order, (int, float)) else index, index)


def compile_steps(workflow_id: str, steps) -> WorkflowPlan:
    """Compile raw step definitions into a WorkflowPlan.

    Raises:
        ValidationError: steps is not a list, a step lacks an id, or a step
            has a kind outside StepKind.
    """
    if steps is None:
        steps = []
    if not isinstance(steps, list):
        raise ValidationError("Workflow steps must be a list")

    for index, step in enumerate(steps):
        if not isinstance(step, dict) or not step.get("id"):
            raise ValidationError("Every step must be an object with an id", details={"index": index})

    planned = []
    ordered = sorted(enumerate(steps), key=_order_key)
    for position, (_, step) in enumerate(ordered):
        try:
            kind = StepKind(step.get("type"))
        except ValueError:
            raise ValidationError(
                f"Unknown step type '{step.get('type')}'",
                details={"stepId": step["id"], "allowed": [k.value for k in StepKind]},
            )
        callback, details = HANDLERS[kind](step)
        planned.append(PlannedStep(
            position=position,
            step_id=str(step["id"]),
            label=str(step.get("label") or ""),
            kind=kind,
            callback=callback,
            details=details,
        ))
    return WorkflowPlan(workflow_id=workflow_id, steps=tuple(planned))


CACHE_EXTENSION_KEY = "flowdesk.plan_cache"


class PlanCache:
    """Compiled plans, one entry per workflow id, least recently used evicted first.

    An entry is valid only for the ``updated_at`` stamp it was compiled from;
    editing the workflow replaces it on the next lookup.
    """

    def __init__(self, max_entries: int = 256):
        self.max_entries = max_entries
        self._entries: OrderedDict[str, tuple[str | None, WorkflowPlan]] = OrderedDict()

    def __len__(self):
        return len(self._entries)

    def get(self, workflow_id: str, stamp: str | None) -> WorkflowPlan | None:
        entry = self._entries.get(workflow_id)
        if entry is None or entry[0] != stamp:
            return None
        self._entries.move_to_end(workflow_id)
        return entry[1]

    def put(self, workflow_id: str, stamp: str | None, plan: WorkflowPlan) -> None:
        self._entries[workflow_id] = (stamp, plan)
        self._entries.move_to_end(workflow_id)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()


def init_plan_cache(app) -> PlanCache:
    cache = PlanCache(app.config.get("PLAN_CACHE_SIZE", 256))
    app.extensions[CACHE_EXTENSION_KEY] = cache
    return cache


def get_plan_cache() -> PlanCache:
    cache = current_app.extensions.get(CACHE_EXTENSION_KEY)
    if cache is None:
        cache = init_plan_cache(current_app)
    return cache


def get_plan(workflow_id: str) -> WorkflowPlan:
    workflow = db.session.get(Workflow, workflow_id)
    if workflow is None:
        raise NotFoundError(resource="Workflow", resource_id=workflow_id)

    cache = get_plan_cache()
    stamp = iso(workflow.updated_at)
    plan = cache.get(workflow.id, stamp)
    if plan is None:
        plan = compile_steps(workflow.id, workflow.steps)
        cache.put(workflow.id, stamp, plan)
        logger.debug("Compiled plan for workflow %s (%d steps)", workflow.id, len(plan.steps),
                     extra={"workflow_id": workflow.id})
    return plan
