"""triagent - command gate for agent-driven incident triage.

An automated agent may propose shell commands against a live environment
(a Kubernetes cluster, a codebase checkout). This package decides which of
them may run:

- Commands are classified as read-only or write, with a risk tier
- Write commands run only with a single-use, time-bounded human approval
- Execution goes to a host, sandbox or remote-shell backend chosen at
  configuration time
- Output is redacted before it reaches the agent

Usage:
    from triagent import build_gateway, get_settings

    gateway = build_gateway(get_settings())
    result = await gateway.run("kubectl get pods -A")
"""

from triagent.config import (
    Settings,
    SettingsContext,
    SettingsValidationError,
    get_settings,
    reload_settings,
    set_settings,
    validate_settings,
)
from triagent.factory import build_gateway, build_workspace_reader
from triagent.gate import (
    BackendNotConfigured,
    CommandGateway,
    GatewayResult,
    RiskLevel,
    classify,
    redact,
)
from triagent.hitl import ApprovalLedger
from triagent.logging import configure_logging

__version__ = "0.1.0"

__all__ = [
    "ApprovalLedger",
    "BackendNotConfigured",
    "CommandGateway",
    "GatewayResult",
    "RiskLevel",
    "Settings",
    "SettingsContext",
    "SettingsValidationError",
    "build_gateway",
    "build_workspace_reader",
    "classify",
    "configure_logging",
    "get_settings",
    "redact",
    "reload_settings",
    "set_settings",
    "validate_settings",
]
