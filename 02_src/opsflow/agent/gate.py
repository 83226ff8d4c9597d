"""Confidence gate: auto-execute, hold for approval, or escalate."""

from typing import Protocol

from ..config import AgentConfig
from ..models import Action, ActionType, Decision, GateResult, GateRoute

NOTIFY_EXTERNAL = "notify_external"


class IConfidenceGate(Protocol):
    def evaluate(self, decision: Decision) -> GateResult:
        ...


def impact_key(action: Action) -> str:
    """Name an action is matched against in ``high_impact_actions``.

    A notification flagged ``external`` counts as ``notify_external``.
    """
    if action.type == ActionType.SEND_NOTIFICATION and action.params.get("external"):
        return NOTIFY_EXTERNAL
    return action.type.value


class ConfidenceGate:
    """Routes a decision by confidence and action impact.

    Checks run in order: low confidence escalates before anything else, then any
    high-impact or confirmation-flagged action forces approval, then the
    auto-execute threshold applies.
    """

    def __init__(self, config: AgentConfig | None = None):
        self._config = config or AgentConfig()
        self._high_impact = set(self._config.high_impact_actions)

    def evaluate(self, decision: Decision) -> GateResult:
        cfg = self._config

        if decision.confidence < cfg.require_approval_threshold:
            return GateResult(
                route=GateRoute.ESCALATE,
                reason=(
                    f"Confidence {decision.confidence:.2f} below approval threshold "
                    f"{cfg.require_approval_threshold:.2f}"
                ),
            )

        high_impact = sorted({impact_key(a) for a in decision.actions} & self._high_impact)
        if high_impact:
            return GateResult(
                route=GateRoute.REQUIRE_APPROVAL,
                reason=f"High-impact actions require approval: {', '.join(high_impact)}",
            )

        flagged = [a.type.value for a in decision.actions if a.requires_confirmation]
        if flagged:
            return GateResult(
                route=GateRoute.REQUIRE_APPROVAL,
                reason=f"Actions flagged for confirmation: {', '.join(flagged)}",
            )

        if decision.requires_approval:
            return GateResult(
                route=GateRoute.REQUIRE_APPROVAL,
                reason=decision.approval_reason or "Decision requested approval",
            )

        if decision.confidence >= cfg.auto_execute_threshold:
            return GateResult(
                route=GateRoute.AUTO_EXECUTE,
                reason=(
                    f"Confidence {decision.confidence:.2f} meets auto-execute threshold "
                    f"{cfg.auto_execute_threshold:.2f}"
                ),
            )

        return GateResult(
            route=GateRoute.REQUIRE_APPROVAL,
            reason=(
                f"Confidence {decision.confidence:.2f} between thresholds "
                f"{cfg.require_approval_threshold:.2f} and {cfg.auto_execute_threshold:.2f}"
            ),
        )
