"""Safety layer: risk classification, vetoes, confirmation and auditing."""

from olly.safety.audit import AuditLog, redact
from olly.safety.gate import Allowed, Denied, GateAborted, GateDecision, NeedsConfirmation, SafetyGate
from olly.safety.risk import DEFAULT_TOOL_RISKS, RiskAssessment, RiskTable

__all__ = [
    "Allowed",
    "AuditLog",
    "DEFAULT_TOOL_RISKS",
    "Denied",
    "GateAborted",
    "GateDecision",
    "NeedsConfirmation",
    "RiskAssessment",
    "RiskTable",
    "SafetyGate",
    "redact",
]
