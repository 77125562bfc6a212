"""
AI step executor: runs one workflow step through the generative model.

Ingress values (``blueprint`` and ``input``) may arrive from the engine as
JSON strings or as objects. They are parsed once into ``Blueprint`` and a
plain dict; a parse failure degrades to the empty default with a warning.

Outcomes:
    StepSuccess     result / actions / message from the model
    NeedsGuidance   the model asked a question; the caller opens a review
    UpstreamError   raised (classified) when the model call fails
"""

import json
import logging
from dataclasses import dataclass, field

from flowdesk.ai.gateway import ModelGateway
from flowdesk.ai.pii import filter_for_model

logger = logging.getLogger(__name__)


@dataclass
class Blueprint:
    """Allow-list (``greenList``) and deny-list (``redList``) of actions."""

    green_list: list = field(default_factory=list)
    red_list: list = field(default_factory=list)

    @classmethod
    def parse(cls, raw) -> "Blueprint":
        data = _parse_json_value(raw, "blueprint")
        if not isinstance(data, dict):
            if data is not None:
                logger.warning("Blueprint is not an object, using defaults")
            return cls()
        return cls(
            green_list=_string_list(data.get("greenList")),
            red_list=_string_list(data.get("redList")),
        )

    def to_dict(self) -> dict:
        return {"greenList": list(self.green_list), "redList": list(self.red_list)}


@dataclass
class StepRequest:
    workflow_id: str
    step_id: str
    step_label: str = ""
    blueprint: Blueprint = field(default_factory=Blueprint)
    input: dict = field(default_factory=dict)
    guidance_context: str | None = None
    worker_name: str | None = None
    execution_id: str | None = None

    @classmethod
    def from_payload(cls, data: dict) -> "StepRequest":
        """Build from a request body whose required fields were already checked."""
        raw_input = _parse_json_value(data.get("input"), "input")
        if raw_input is None:
            raw_input = {}
        elif not isinstance(raw_input, (dict, list)):
            logger.warning("Input is not an object, using empty object")
            raw_input = {}

        guidance = data.get("guidanceContext")
        return cls(
            workflow_id=str(data["workflowId"]),
            step_id=str(data["stepId"]),
            step_label=str(data.get("stepLabel") or ""),
            blueprint=Blueprint.parse(data.get("blueprint")),
            input=raw_input,
            guidance_context=str(guidance) if guidance else None,
            worker_name=data.get("workerName"),
            execution_id=str(data["executionId"]) if data.get("executionId") else None,
        )


@dataclass
class StepSuccess:
    result: object = None
    actions: list = field(default_factory=list)
    message: str = "Action completed"

    def to_dict(self) -> dict:
        return {
            "success": True,
            "result": self.result,
            "actions": self.actions,
            "message": self.message,
        }


@dataclass
class NeedsGuidance:
    question: str | None = None
    partial_result: object = None

    def to_dict(self) -> dict:
        return {
            "success": False,
            "needsGuidance": True,
            "guidanceQuestion": self.question,
            "partialResult": self.partial_result,
            "message": "AI agent requires guidance to proceed",
        }


def _parse_json_value(raw, label):
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Failed to parse %s, using defaults", label)
            return None
    return raw


def _string_list(value) -> list:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


# ── Prompt building ──────────────────────────────────────────────────────────

_RESPONSE_FORMAT = """## Response Format:
Respond with a JSON object containing:
{
  "result": <the output of your action>,
  "actions": [<list of actions taken>],
  "message": "<brief summary of what was done>",
  "needsGuidance": false
}

If you are uncertain or need human input, respond with:
{
  "needsGuidance": true,
  "guidanceQuestion": "<your specific question>",
  "partialResult": <any partial work completed>
}
"""


def _bullets(items, empty):
    if not items:
        return f"- {empty}"
    return "\n".join(f"- {item}" for item in items)


def build_system_prompt(step_label: str, blueprint: Blueprint, guidance_context: str | None = None) -> str:
    prompt = (
        f'You are an AI agent executing a workflow step: "{step_label}".\n\n'
        "## Your Capabilities (Allowed Actions):\n"
        f"{_bullets(blueprint.green_list, 'General task execution')}\n\n"
        "## Hard Limits (NEVER do these):\n"
        f"{_bullets(blueprint.red_list, 'No specific restrictions')}\n\n"
        f"{_RESPONSE_FORMAT}"
    )
    if guidance_context:
        prompt += f"\n## Previous Guidance from Manager:\n{guidance_context}\n"
    return prompt


def build_user_prompt(input_data) -> str:
    return (
        "Execute the task with the following input data:\n\n"
        f"{json.dumps(input_data, indent=2, default=str)}\n\n"
        "Perform the required action and return the result in the specified JSON format."
    )


# ── Response parsing ─────────────────────────────────────────────────────────

def _strip_fences(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def parse_model_reply(text: str) -> StepSuccess | NeedsGuidance:
    """Interpret model text; non-JSON output is still a usable result."""
    try:
        data = json.loads(_strip_fences(text))
    except ValueError:
        return StepSuccess(result=text, actions=["processed"], message="Action completed")

    if not isinstance(data, dict):
        return StepSuccess(result=data, actions=["processed"], message="Action completed")

    if data.get("needsGuidance") is True:
        return NeedsGuidance(
            question=data.get("guidanceQuestion"),
            partial_result=data.get("partialResult"),
        )

    actions = data.get("actions")
    return StepSuccess(
        result=data.get("result"),
        actions=actions if isinstance(actions, list) else [],
        message=data.get("message") or "Action completed",
    )


class StepExecutor:
    """Runs AI action steps against a ModelGateway."""

    def __init__(self, gateway: ModelGateway):
        self.gateway = gateway

    def execute(self, step: StepRequest) -> StepSuccess | NeedsGuidance:
        """
        Execute *step* once (the gateway retries transient failures).

        Raises:
            UpstreamError / ProviderCallError: the model call failed; the
                caller classifies with ``classify_error``.
        """
        safe_input = filter_for_model(step.input, context=f"step {step.step_id}")
        system_prompt = build_system_prompt(step.step_label, step.blueprint, step.guidance_context)
        user_prompt = build_user_prompt(safe_input)

        text = self.gateway.generate(system_prompt, user_prompt)
        return parse_model_reply(text)
