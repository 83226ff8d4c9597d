"""Decision provider backed by an LLM."""

import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import ErrorCode, OperationError
from ..inputs.base import format_validation_errors
from ..logging_config import get_logger, log_context
from ..models import Action, ActionType, AgentInput, Decision
from .llm_provider import ILLMProvider

logger = get_logger(__name__)

FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
MAX_RAW_CONTENT = 4000

SYSTEM_PROMPT = """You are an operations orchestration agent. Read the incoming business event and decide what to do.

Respond with a single JSON object and nothing else:
{
  "intent": "<short snake_case intent>",
  "confidence": <number between 0 and 1>,
  "urgency": <integer 1-5>,
  "reasoning": "<one or two sentences>",
  "requires_approval": <true|false>,
  "approval_reason": "<why, or null>",
  "warnings": ["<optional>"],
  "actions": [
    {"type": "<action type>", "params": {...}, "priority": <1-5>, "requires_confirmation": <true|false>}
  ]
}

Allowed action types: {action_types}.
Use "no_action" when nothing should happen."""


class ActionModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: ActionType
    params: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=3, ge=1, le=5)
    requires_confirmation: bool = False

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class DecisionModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    intent: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    urgency: int = Field(default=3, ge=1, le=5)
    actions: list[ActionModel] = Field(default_factory=list)
    requires_approval: bool = False
    approval_reason: str | None = None
    reasoning: str | None = None
    warnings: list[str] = Field(default_factory=list)

    def to_decision(self) -> Decision:
        return Decision(
            intent=self.intent,
            confidence=self.confidence,
            urgency=self.urgency,
            actions=[
                Action(
                    type=a.type,
                    params=dict(a.params),
                    priority=a.priority,
                    requires_confirmation=a.requires_confirmation,
                )
                for a in self.actions
            ],
            requires_approval=self.requires_approval,
            approval_reason=self.approval_reason,
            reasoning=self.reasoning,
            warnings=list(self.warnings),
        )


def extract_json(text: str) -> str:
    """Pull the JSON object out of a reply, tolerating code fences and chatter."""
    fenced = FENCE.search(text)
    if fenced:
        return fenced.group(1).strip()
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return text.strip()
    return text[start:end + 1]


def parse_decision(text: str) -> Decision:
    """Parse a model reply into a Decision. Malformed output is a VALIDATION_ERROR."""
    try:
        data = json.loads(extract_json(text))
    except json.JSONDecodeError as e:
        raise OperationError(
            ErrorCode.VALIDATION_ERROR,
            f"Decision is not valid JSON: {e.msg}",
            details={"raw": text[:500]},
        ) from e
    if not isinstance(data, dict):
        raise OperationError(
            ErrorCode.VALIDATION_ERROR,
            "Decision must be a JSON object",
            details={"raw": text[:500]},
        )
    try:
        return DecisionModel.model_validate(data).to_decision()
    except ValidationError as e:
        raise OperationError(
            ErrorCode.VALIDATION_ERROR,
            "Decision failed validation",
            details={"errors": format_validation_errors(e), "raw": text[:500]},
        ) from e


def build_messages(agent_input: AgentInput, org_context: dict[str, Any]) -> list[dict]:
    summary = {
        "source": agent_input.source.value,
        "type": agent_input.type,
        "correlation_id": agent_input.correlation_id,
        "timestamp": agent_input.timestamp.isoformat(),
        "metadata": agent_input.metadata.to_dict(),
        "structured_data": agent_input.structured_data,
        "raw_content": agent_input.raw_content[:MAX_RAW_CONTENT],
    }
    content = (
        "Organization context:\n"
        f"{json.dumps(org_context, indent=2, default=str)}\n\n"
        "Incoming event:\n"
        f"{json.dumps(summary, indent=2, default=str)}"
    )
    return [{"role": "user", "content": content}]


class LLMDecisionProvider:
    """Asks the LLM for a structured decision about one input."""

    def __init__(self, llm: ILLMProvider, max_tokens: int = 1024):
        self._llm = llm
        self._max_tokens = max_tokens
        self._system = SYSTEM_PROMPT.replace(
            "{action_types}", ", ".join(t.value for t in ActionType)
        )

    async def decide(self, agent_input: AgentInput, org_context: dict[str, Any]) -> Decision:
        reply = await self._llm.complete(
            build_messages(agent_input, org_context),
            system=self._system,
            max_tokens=self._max_tokens,
        )
        decision = parse_decision(reply)
        logger.info(
            "Decision %s (confidence %.2f, %s actions)",
            decision.intent,
            decision.confidence,
            len(decision.actions),
            extra=log_context(agent_input.correlation_id),
        )
        return decision
