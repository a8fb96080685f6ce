"""Wiring of the command gateway from settings.

Everything is constructed explicitly here; there are no module-level
ledger or backend singletons.
"""

from triagent.backends import BackendConfig, ExecutionBackend, create_backend
from triagent.config import Settings, get_settings
from triagent.gate.audit import AuditConfig, AuditLogger
from triagent.gate.classifier import ClassificationRule, CommandClassifier
from triagent.gate.gateway import CommandGateway
from triagent.gate.redaction import Redactor
from triagent.gate.workspace import WorkspaceReader
from triagent.hitl import ApprovalLedger, LedgerConfig
from triagent.logging import Loggers

logger = Loggers.config()


def build_classifier(settings: Settings) -> CommandClassifier:
    """Default rule table, preceded by any rules from settings."""
    extra_rules = [
        ClassificationRule.from_pattern(pattern, tier)
        for pattern, tier in settings.classifier_rules.items()
    ]
    return CommandClassifier(extra_rules=extra_rules)


def build_audit_logger(settings: Settings) -> AuditLogger | None:
    if not settings.audit_enabled:
        return None
    return AuditLogger(AuditConfig(log_dir=str(settings.resolved_audit_dir)))


def build_gateway(
    settings: Settings | None = None,
    backend: ExecutionBackend | None = None,
) -> CommandGateway:
    """Build a CommandGateway from settings.

    Args:
        settings: Settings to use (default: get_settings()).
        backend: Prebuilt backend; created from settings when None.

    Returns:
        Gateway whose classifier, ledger, redactor and audit logger all
        follow the settings.
    """
    settings = settings or get_settings()

    if backend is None:
        backend = create_backend(BackendConfig.from_settings(settings))

    classifier = build_classifier(settings)
    ledger = ApprovalLedger(
        LedgerConfig(ttl_seconds=settings.approval_ttl_seconds),
        classifier=classifier,
    )

    gateway = CommandGateway(
        backend=backend,
        ledger=ledger,
        classifier=classifier,
        redactor=Redactor(settings.redaction_patterns),
        audit=build_audit_logger(settings),
    )
    logger.info(
        "gateway_built",
        backend=backend.name,
        approval_ttl=settings.approval_ttl_seconds,
        audit=settings.audit_enabled,
    )
    return gateway


def build_workspace_reader(gateway: CommandGateway) -> WorkspaceReader:
    """Workspace reader over the gateway's backend.

    The root is the sandbox workdir for sandboxed backends and the backend's
    own working directory otherwise.

    Raises:
        ValueError: If the gateway has no backend.
    """
    if gateway.backend is None:
        raise ValueError("Gateway has no backend to read from")
    if gateway.backend.name == "sandboxed":
        root = gateway.backend.describe().get("workdir") or "/workspace"
    else:
        root = ""
    return WorkspaceReader(gateway.backend, root=root, redactor=gateway.redactor)
