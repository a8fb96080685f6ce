"""Read-only access to the mounted codebase for the agent.

Reads and listings go straight to the execution backend; they never change
state so they are not gated. Paths are anchored under the workspace root.
"""

import re
import shlex
from typing import TYPE_CHECKING, Any

from triagent.gate.redaction import Redactor
from triagent.logging import Loggers

if TYPE_CHECKING:
    from triagent.backends.base import ExecutionBackend

logger = Loggers.gateway()

DEFAULT_MAX_LINES = 500
SEARCH_MAX_MATCHES = 100
SEARCH_INCLUDES = (
    "*.py", "*.ts", "*.tsx", "*.js", "*.jsx", "*.go", "*.json", "*.yaml", "*.yml", "*.toml", "*.md",
)


class WorkspaceReader:
    """File reads, listings and searches under a workspace root.

    Results are tool-style dictionaries with a ``success`` flag and either
    ``content``/``entries`` or an ``error`` message.
    """

    def __init__(
        self,
        backend: "ExecutionBackend",
        root: str = "/workspace",
        redactor: Redactor | None = None,
    ):
        self.backend = backend
        self.root = root.rstrip("/") if root not in ("", "/") else root
        self.redactor = redactor or Redactor()

    def resolve(self, path: str) -> str:
        """Anchor a user path under the root.

        Parent references, leading slashes and repeated slashes are removed,
        so the result cannot leave the root.
        """
        clean = path.replace("..", "")
        clean = re.sub(r"/+", "/", clean).lstrip("/")
        if not self.root:
            return clean or "."
        if self.root == "/":
            return f"/{clean}"
        return f"{self.root}/{clean}" if clean else self.root

    async def read(self, path: str, max_lines: int = DEFAULT_MAX_LINES) -> dict[str, Any]:
        """Read a text file, truncated to max_lines."""
        target = self.resolve(path)
        try:
            data = await self.backend.read_file(target)
        except OSError as e:
            logger.debug("workspace_read_failed", path=target, error=str(e))
            return {"success": False, "error": str(e)}

        content = data.decode("utf-8", errors="replace")
        lines = content.split("\n")
        if len(lines) > max_lines:
            content = "\n".join(lines[:max_lines])
            content += f"\n\n... [Truncated: showing {max_lines} of {len(lines)} lines]"

        return {"success": True, "path": target, "content": self.redactor.redact(content)}

    async def list(self, path: str = "") -> dict[str, Any]:
        """List the entries of a directory."""
        target = self.resolve(path)
        try:
            entries = await self.backend.list_dir(target)
        except OSError as e:
            logger.debug("workspace_list_failed", path=target, error=str(e))
            return {"success": False, "error": str(e)}
        return {"success": True, "path": target, "entries": entries, "count": len(entries)}

    async def search(self, path: str, pattern: str) -> dict[str, Any]:
        """Search source files for a grep pattern, capped at 100 matches."""
        if not pattern:
            return {"success": False, "error": "Pattern is required for search"}

        target = self.resolve(path)
        includes = " ".join(f"--include={shlex.quote(glob)}" for glob in SEARCH_INCLUDES)
        command = (
            f"grep -rn {includes} -e {shlex.quote(pattern)} {shlex.quote(target)}"
            f" | head -{SEARCH_MAX_MATCHES}"
        )
        result = await self.backend.execute(command)

        # grep exits 1 when nothing matched; the pipe through head hides it anyway
        if result.exit_code not in (0, 1):
            return {"success": False, "error": self.redactor.redact(result.stderr) or "Search failed"}

        return {
            "success": True,
            "path": target,
            "content": self.redactor.redact(result.stdout) or "No matches found",
        }
