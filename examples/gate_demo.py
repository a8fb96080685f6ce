#!/usr/bin/env python
"""Standalone demo for the command gate.

Walks through the gate on the host backend:
1. Risk classification of typical triage commands
2. Read-only commands running immediately, with redacted output
3. A write command held for approval, approved, then executed once
4. Token replay and token/command mismatch being refused

Usage:
    python examples/gate_demo.py
"""

import asyncio
import tempfile
from pathlib import Path

from triagent import Settings, build_gateway, classify, configure_logging
from triagent.factory import build_workspace_reader


# =============================================================================
# Demo Functions
# =============================================================================


def demo_classification():
    """Demo the risk classifier."""
    print("\n" + "=" * 60)
    print("Risk Classification")
    print("=" * 60)

    commands = [
        "kubectl get pods -A",
        "kubectl logs deploy/api --since=10m",
        "kubectl scale deployment/api --replicas=3",
        "kubectl delete pod api-7f9c",
        "kubectl delete namespace prod",
        "git stash list",
        "touch /tmp/marker",
    ]
    for command in commands:
        tier = classify(command)
        label = tier.value if tier else "read-only"
        print(f"    {label:10} {command}")
    print()


async def demo_read_only(gateway):
    """Demo read-only execution and redaction."""
    print("\n" + "=" * 60)
    print("Read-only Commands")
    print("=" * 60)

    for command in ["echo 'cluster looks fine'", "echo 'db password=hunter2'"]:
        result = await gateway.run(command)
        print(f"\n  Command: {command}")
        print(f"    Executed: {result.executed}")
        print(f"    Output: {result.result.stdout.strip()}")
    print()


async def demo_approval_flow(gateway, workdir: Path):
    """Demo a write command going through approval."""
    print("\n" + "=" * 60)
    print("Approval Flow")
    print("=" * 60)

    command = f"touch {workdir / 'incident-notes.md'}"

    held = await gateway.run(command)
    print(f"\n  Command: {command}")
    print(f"    Requires approval: {held.requires_approval}")
    print(f"    Risk level: {held.risk_level.value}")
    print(f"    Approval id: {held.approval_id}")

    for pending in gateway.list_pending():
        print(f"    Pending: {pending.to_dict()}")

    token = gateway.approve(held.approval_id)
    executed = await gateway.run(command, token)
    print(f"\n  With token:")
    print(f"    Executed: {executed.executed}")
    print(f"    File exists: {(workdir / 'incident-notes.md').exists()}")

    replay = await gateway.run(command, token)
    print(f"\n  Replaying the same token:")
    print(f"    Executed: {replay.executed}")
    print(f"    Error: {replay.error}")

    other = await gateway.run(f"rm {workdir / 'incident-notes.md'}", token)
    print(f"\n  Token on a different command:")
    print(f"    Executed: {other.executed}")
    print(f"    Error kind: {other.error_kind.value}")
    print()


async def demo_workspace(gateway, workdir: Path):
    """Demo the read-only workspace reader."""
    print("\n" + "=" * 60)
    print("Workspace Reader")
    print("=" * 60)

    (workdir / "values.yaml").write_text("replicas: 3\napi_key: abc123\n")
    reader = build_workspace_reader(gateway)

    listing = await reader.list("")
    print(f"\n  Entries: {listing.get('entries')}")

    content = await reader.read("values.yaml")
    print(f"  values.yaml:\n{content.get('content')}")
    print()


async def main():
    with tempfile.TemporaryDirectory() as temp_dir:
        workdir = Path(temp_dir)
        settings = Settings(
            backend_kind="host",
            audit_enabled=False,
            codebase_paths=[str(workdir)],
            workspace_dir=workdir / ".triagent",
        )
        configure_logging(settings)
        gateway = build_gateway(settings)

        demo_classification()
        await demo_read_only(gateway)
        await demo_approval_flow(gateway, workdir)
        await demo_workspace(gateway, workdir)

        await gateway.backend.close()


if __name__ == "__main__":
    asyncio.run(main())
