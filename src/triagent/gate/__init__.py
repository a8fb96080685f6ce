"""Command gate for agent-proposed shell commands.

Every command the agent proposes passes through the gateway:
- Classification: read-only or write, with a risk tier (first rule wins)
- Approval: write commands wait for a single-use, time-bounded token
- Execution: on the configured backend (host, sandbox or remote shell)
- Redaction: credentials, bearer tokens and PEM blocks stripped from output
- Audit: every decision appended to a JSONL trail

Usage:
    from triagent.factory import build_gateway

    gateway = build_gateway(settings)

    result = await gateway.run("kubectl get pods -A")
    # result.executed is True

    result = await gateway.run("kubectl scale deployment/x --replicas=3")
    # result.requires_approval is True, result.approval_id identifies it

    token = gateway.approve(result.approval_id)
    result = await gateway.run("kubectl scale deployment/x --replicas=3", token)
    # executed; the token is now spent
"""

from triagent.gate.models import (
    ApprovedToken,
    BackendNotConfigured,
    ClassifiedCommand,
    ErrorKind,
    ExecutionResult,
    GatewayResult,
    PendingApproval,
    RiskLevel,
    RuleOutcome,
    TokenCheck,
)
from triagent.gate.classifier import ClassificationRule, CommandClassifier, classify
from triagent.gate.redaction import Redactor, redact
from triagent.gate.audit import AuditConfig, AuditEntry, AuditLogger, Decision
from triagent.gate.gateway import CommandGateway
from triagent.gate.workspace import WorkspaceReader

__all__ = [
    "ApprovedToken",
    "AuditConfig",
    "AuditEntry",
    "AuditLogger",
    "BackendNotConfigured",
    "ClassificationRule",
    "ClassifiedCommand",
    "CommandClassifier",
    "CommandGateway",
    "Decision",
    "ErrorKind",
    "ExecutionResult",
    "GatewayResult",
    "PendingApproval",
    "Redactor",
    "RiskLevel",
    "RuleOutcome",
    "TokenCheck",
    "WorkspaceReader",
    "classify",
    "redact",
]
