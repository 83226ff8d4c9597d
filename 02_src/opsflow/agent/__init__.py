"""Orchestration agent: confidence gate and coordinator."""

from .coordinator import IOrchestrationAgent, OrchestrationAgent, input_from_event
from .gate import ConfidenceGate, IConfidenceGate, impact_key

__all__ = [
    "ConfidenceGate",
    "IConfidenceGate",
    "IOrchestrationAgent",
    "OrchestrationAgent",
    "impact_key",
    "input_from_event",
]
