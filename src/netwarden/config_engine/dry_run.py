"""Third validation layer: ask the real tool.

The tool's exit status and diagnostics are translated into findings of
the same shape as the syntax and semantic layers. A tool that cannot run
produces an ``environment`` finding, so callers can tell "your
configuration is wrong" apart from "this host cannot check it".
"""
import logging
import re
from typing import Optional

from ..config.schema import NetworkConfiguration
from .executor import InterfaceTool, ToolEnvironmentError, ToolResult, ToolTimeoutError
from .schema import Finding, FindingCategory, Severity

logger = logging.getLogger(__name__)

STAGE = "dry_run"

# ifupdown2 diagnostics: "error: vmbr0: bridge port eth9 does not exist"
DIAGNOSTIC_PATTERN = re.compile(
    r"^(?P<level>error|warning|info):\s*(?:(?P<iface>[A-Za-z][\w.-]*):\s+)?(?P<message>.+)$",
    re.IGNORECASE,
)

# Exit status the tool uses for "the configuration has errors"
CONFIG_ERROR_STATUS = 1

_LEVELS = {
    "error": Severity.ERROR,
    "warning": Severity.WARNING,
    "info": Severity.INFO,
}


class DryRunValidator:
    """Run the tool's non-mutating check and report what it says."""

    def __init__(self, tool: InterfaceTool, required: bool = True, timeout: Optional[float] = None):
        """
        Args:
            tool: Tool to run the check with
            required: When False, a tool that cannot run is a warning, not an error
            timeout: Seconds before the check is killed (tool default when None)
        """
        self.tool = tool
        self.required = required
        self.timeout = timeout

    async def validate(self, config: NetworkConfiguration, content: str) -> list[Finding]:
        """
        Dry-run ``content``, the materialized form of ``config``.

        Returns:
            Findings; an environment finding when the tool could not run
        """
        try:
            result = await self.tool.check(content, timeout=self.timeout)
        except ToolTimeoutError as e:
            logger.warning(f"Dry-run timed out: {e}")
            return [self._environment(f"Dry-run timed out: {e}")]
        except ToolEnvironmentError as e:
            logger.warning(f"Dry-run could not run: {e}")
            return [self._environment(f"Dry-run could not run: {e}")]

        return self.translate(result, set(config.names()))

    def translate(self, result: ToolResult, known: set[str]) -> list[Finding]:
        """Map a finished check to findings."""
        if result.returncode not in (0, CONFIG_ERROR_STATUS):
            detail = _tail(result.stderr) or "no output"
            if result.returncode < 0:
                message = f"Dry-run tool was killed by signal {-result.returncode}: {detail}"
            else:
                message = f"Dry-run tool failed with status {result.returncode}: {detail}"
            return [self._environment(message)]

        findings = []
        for line in (result.stderr + "\n" + result.stdout).splitlines():
            match = DIAGNOSTIC_PATTERN.match(line.strip())
            if not match:
                continue
            severity = _LEVELS[match.group("level").lower()]
            iface = match.group("iface")
            message = match.group("message").strip()
            if iface and iface not in known:
                message = f"{iface}: {message}"
                iface = None
            findings.append(Finding(severity, "dry-run", message, iface, stage=STAGE))

        if result.returncode == CONFIG_ERROR_STATUS and not any(f.is_error for f in findings):
            findings.append(Finding(
                Severity.ERROR, "dry-run",
                f"Dry-run rejected the configuration: {_tail(result.stderr) or 'no diagnostics'}",
                stage=STAGE,
            ))
        return findings

    def _environment(self, message: str) -> Finding:
        severity = Severity.ERROR if self.required else Severity.WARNING
        return Finding(
            severity, "environment", message,
            category=FindingCategory.ENVIRONMENT, stage=STAGE,
        )


def _tail(text: str, lines: int = 5) -> str:
    return " | ".join(line.strip() for line in text.strip().splitlines()[-lines:] if line.strip())
