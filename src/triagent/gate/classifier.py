"""Command classifier deciding whether a shell command mutates state.

A single ordered rule table is evaluated top to bottom and the first
matching rule wins:

- critical, high and medium tier rules
- read-only exemptions for otherwise-mutating verbs (``git stash list``)
- catch-all write detectors, which default to the low tier

A command that matches nothing is read-only and needs no approval.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable

from triagent.gate.models import ClassifiedCommand, RiskLevel, RuleOutcome


# Tool prefixes tolerating global options before the verb,
# e.g. "kubectl -n prod delete" or "git -C repo push".
_KUBECTL = r"\bkubectl(?:\s+--?[\w-]+(?:[=\s](?!-)\S+)?)*\s+"
_GIT = r"\bgit(?:\s+-[Cc]\s+\S+|\s+--?[\w-]+(?:=\S+)?)*\s+"
_HELM = r"\bhelm(?:\s+--?[\w-]+(?:[=\s](?!-)\S+)?)*\s+"
# Start of a bare command word (not "--rm", not "kubectl get pod rm-x")
_WORD = r"(?:^|[\s;&|(`'\"])"

_CLUSTER_SCOPED = (
    r"(?:namespaces?|ns|nodes?|no|pv|persistentvolumes?|pvc|persistentvolumeclaims?"
    r"|clusterroles?|clusterrolebindings?|crds?|customresourcedefinitions?)"
)


@dataclass(frozen=True)
class ClassificationRule:
    """A single row of the classification table.

    Attributes:
        pattern: Regex searched (case-insensitive) in the command string.
        outcome: What a match means: NotWrite or Write(tier).
        description: Human-readable reason surfaced to the approver.
    """

    pattern: str
    outcome: RuleOutcome
    description: str
    _compiled: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_compiled", re.compile(self.pattern, re.IGNORECASE))

    def matches(self, command: str) -> bool:
        return self._compiled.search(command) is not None

    @classmethod
    def from_pattern(
        cls,
        pattern: str,
        tier: str | RiskLevel | None,
        description: str | None = None,
    ) -> "ClassificationRule":
        """Build a rule from configuration values.

        A tier of None produces a read-only (allow) rule.
        """
        if tier is None:
            outcome = RuleOutcome.not_write()
        else:
            outcome = RuleOutcome.write(RiskLevel(tier) if isinstance(tier, str) else tier)
        return cls(pattern, outcome, description or f"matches configured pattern {pattern!r}")


def _rules(tier: RiskLevel | None, entries: Iterable[tuple[str, str]]) -> list[ClassificationRule]:
    outcome = RuleOutcome.write(tier) if tier is not None else RuleOutcome.not_write()
    return [ClassificationRule(pattern, outcome, desc) for pattern, desc in entries]


CRITICAL_RULES = _rules(RiskLevel.CRITICAL, [
    (
        _KUBECTL + r"delete\s+(?:--?[\w-]+(?:=\S+)?\s+)*" + _CLUSTER_SCOPED + r"(?![\w-])",
        "deletes a namespace or cluster-scoped resource",
    ),
    (
        _KUBECTL + r"delete\b(?=.*\s--all\b)(?=.*(?:\s-A\b|\s--all-namespaces\b))",
        "deletes every resource across all namespaces",
    ),
    (
        _GIT + r"push\b.*\s(?:(?:--force(?:-with-lease)?|-f)(?![\w-])|\+\S)",
        "force-pushes over remote history",
    ),
    (
        r"\brm\s+(?:-[a-z]*r[a-z]*\s+|--recursive\s+)(?:-\S+\s+)*(?:/(?!tmp(?:/(?!\S*\.\.)|\s|$))|~|\$HOME)",
        "recursively deletes files outside /tmp",
    ),
    (_HELM + r"(?:uninstall|delete|del)\b", "uninstalls a helm release"),
])

HIGH_RULES = _rules(RiskLevel.HIGH, [
    (_KUBECTL + r"delete\b", "deletes cluster resources"),
    (_KUBECTL + r"apply\b.*(?:-f|--filename)[=\s]*https?://", "applies manifests fetched from a URL"),
    (_KUBECTL + r"(?:drain|cordon)(?![\w-])", "takes a node out of scheduling"),
    (_GIT + r"reset\b.*\s--hard\b", "discards local commits and changes"),
    (_GIT + r"push\b", "publishes commits to a remote"),
    (_HELM + r"(?:install|upgrade)\b", "installs or upgrades a helm release"),
])

MEDIUM_RULES = _rules(RiskLevel.MEDIUM, [
    (_KUBECTL + r"scale\b", "changes replica count"),
    (_KUBECTL + r"rollout\s+(?:restart|undo)\b", "restarts or rolls back a workload"),
    (_KUBECTL + r"(?:apply|create|patch)\b", "creates or modifies cluster resources"),
    (_GIT + r"(?:commit|merge|rebase)\b", "rewrites the local branch"),
    (_HELM + r"rollback\b", "rolls back a helm release"),
])

READ_ONLY_EXEMPTIONS = _rules(None, [
    (_GIT + r"stash\s+(?:list|show)\b", "lists stashes"),
    (_GIT + r"(?:tag|branch)\s+(?:-l|--list)\b", "lists tags or branches"),
])

WRITE_RULES = _rules(RiskLevel.LOW, [
    # Kubernetes
    (
        _KUBECTL + r"(?:delete|apply|create|patch|edit|replace|set|label|annotate"
        r"|taint|cordon|uncordon|drain|scale|autoscale)(?![\w-])",
        "kubectl mutation",
    ),
    (_KUBECTL + r"rollout\s+(?:restart|undo|pause|resume)\b", "kubectl rollout mutation"),
    (
        r"\bkubectl\s+exec\b.*\s--\s+.*\b(?:rm|mv|cp|chmod|chown|kill|pkill|shutdown"
        r"|reboot|dd|mkfs|fdisk)\b",
        "destructive command inside a pod",
    ),
    # Version control
    (
        _GIT + r"(?:commit|push|merge|rebase|reset|checkout|switch|restore|stash|tag"
        r"|cherry-pick|revert|am|pull|clean|add|rm|mv)(?![\w-])",
        "git repository mutation",
    ),
    (_GIT + r"branch\b.*\s(?:-[dDmM]|--delete|--move)\b", "git branch deletion or rename"),
    # Filesystem
    (
        _WORD + r"(?:rm|rmdir|unlink|mv|cp|mkdir|touch|chmod|chown|chgrp|ln|truncate"
        r"|shred|dd)\s+",
        "filesystem write",
    ),
    (_WORD + r"tee\s+", "writes output to a file"),
    (r"(?:^|[^<>&])(?:\d|&)?>{1,2}(?!&)\s*(?!/dev/(?:null|stdout|stderr)\b)[^\s&|;<>]", "output redirected to a file"),
    (r"\bsed\b[^|;&]*\s(?:-i|--in-place)", "in-place edit"),
    (r"\bperl\b[^|;&]*\s-[a-z]*i", "in-place edit"),
    # Package managers
    (
        r"\b(?:apt|apt-get|yum|dnf|apk|brew|npm|yarn|pnpm|pip3?|cargo|gem)\s+"
        r"(?:install|add|remove|uninstall|update|upgrade|purge)\b",
        "package manager mutation",
    ),
    # Service managers
    (
        r"\bsystemctl\s+(?:--?[\w-]+\s+)*(?:start|stop|restart|reload|enable|disable|kill|mask)\b",
        "service state change",
    ),
    (r"\bservice\s+\S+\s+(?:start|stop|restart|reload)\b", "service state change"),
    # Container engines
    (
        r"\b(?:docker|podman)\s+(?:container\s+|image\s+|volume\s+|network\s+|system\s+)?"
        r"(?:rm|rmi|stop|kill|prune|restart|pause|unpause|run|create|start)\b",
        "container lifecycle mutation",
    ),
    (r"\bdocker(?:-|\s+)compose\b[^|;&]*\s(?:down|rm|stop|up|restart|kill)\b", "compose lifecycle mutation"),
    # Helm
    (_HELM + r"(?:install|upgrade|uninstall|delete|rollback)\b", "helm release mutation"),
])

DEFAULT_RULES: list[ClassificationRule] = [
    *CRITICAL_RULES,
    *HIGH_RULES,
    *MEDIUM_RULES,
    *READ_ONLY_EXEMPTIONS,
    *WRITE_RULES,
]


class CommandClassifier:
    """Classifies shell commands as read-only or write with a risk tier.

    Classification is pure: no I/O, no state changes.
    """

    def __init__(
        self,
        rules: list[ClassificationRule] | None = None,
        extra_rules: list[ClassificationRule] | None = None,
    ):
        """Initialize classifier.

        Args:
            rules: Replacement rule table (defaults to DEFAULT_RULES).
            extra_rules: Rules evaluated before the table, e.g. from config.
        """
        self.rules = [*(extra_rules or []), *(rules if rules is not None else DEFAULT_RULES)]

    def classify_command(self, command: str) -> ClassifiedCommand:
        """Classify a command and return the full record."""
        for rule in self.rules:
            if rule.matches(command):
                return ClassifiedCommand(
                    command=command,
                    is_write=rule.outcome.is_write,
                    risk_level=rule.outcome.tier,
                    reason=rule.description,
                    matched_pattern=rule.pattern,
                )

        return ClassifiedCommand(command=command, is_write=False, reason="no mutation pattern matched")

    def classify(self, command: str) -> RiskLevel | None:
        """Return the risk tier of a write command, or None if read-only."""
        return self.classify_command(command).risk_level

    def is_write(self, command: str) -> bool:
        return self.classify_command(command).is_write


_default_classifier = CommandClassifier()


def classify(command: str) -> RiskLevel | None:
    """Classify with the default rule table.

    Examples:
        >>> classify("kubectl delete namespace prod")
        <RiskLevel.CRITICAL: 'critical'>
        >>> classify("kubectl get pods -A") is None
        True
    """
    return _default_classifier.classify(command)
