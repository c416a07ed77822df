"""Run the host's network tooling.

``InterfaceTool`` is the seam between the engine and the host: a
non-mutating syntax/dry-run check, a mutating apply, and a live-state
query. ``IfupdownTool`` implements it with ifupdown2 and iproute2.
"""
import asyncio
import json
import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..utils.logging_config import timed
from .schema import LiveInterfaceState

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


class ToolEnvironmentError(Exception):
    """The tool could not be run at all (missing, not permitted, crashed)."""

    def __init__(self, message: str, command: Optional[list[str]] = None):
        super().__init__(message)
        self.command = command or []


class ToolTimeoutError(ToolEnvironmentError):
    """The tool ran longer than allowed and was killed."""
    pass


@dataclass
class ToolResult:
    """Exit status and output of one tool invocation."""
    command: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def to_dict(self) -> dict:
        return {
            "command": " ".join(self.command),
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": round(self.duration_ms, 2),
        }

    def __repr__(self) -> str:
        status = "OK" if self.success else f"EXIT {self.returncode}"
        return f"ToolResult({status}, {' '.join(self.command)!r})"


class InterfaceTool(ABC):
    """Boundary to the tool that reads and applies interfaces files."""

    name: str = "tool"

    @abstractmethod
    async def check(self, content: str, timeout: Optional[float] = None) -> ToolResult:
        """Dry-run ``content`` without touching the live system."""
        pass

    @abstractmethod
    async def apply(self, timeout: Optional[float] = None) -> ToolResult:
        """Apply the interfaces file currently on disk."""
        pass

    @abstractmethod
    async def live_state(self, timeout: Optional[float] = None) -> dict[str, LiveInterfaceState]:
        """Current kernel view of every interface, keyed by name."""
        pass


class IfupdownTool(InterfaceTool):
    """ifupdown2 for check/apply, ``ip -json`` for live state."""

    name = "ifupdown2"

    def __init__(
        self,
        ifup_path: str = "/sbin/ifup",
        ifreload_path: str = "/sbin/ifreload",
        ip_path: str = "/sbin/ip",
        default_timeout: float = DEFAULT_TIMEOUT,
    ):
        self.ifup_path = ifup_path
        self.ifreload_path = ifreload_path
        self.ip_path = ip_path
        self.default_timeout = default_timeout

    @classmethod
    def from_settings(cls, settings) -> "IfupdownTool":
        return cls(
            ifup_path=settings.ifup_path,
            ifreload_path=settings.ifreload_path,
            ip_path=settings.ip_path,
            default_timeout=settings.dry_run_timeout,
        )

    @timed("dry_run")
    async def check(self, content: str, timeout: Optional[float] = None) -> ToolResult:
        fd, path = tempfile.mkstemp(prefix="netwarden-", suffix=".interfaces")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            return await self._run(
                [self.ifup_path, "--all", "--no-act", "--interfaces", path],
                timeout,
            )
        finally:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

    @timed("apply")
    async def apply(self, timeout: Optional[float] = None) -> ToolResult:
        return await self._run([self.ifreload_path, "--all"], timeout)

    @timed("live_state")
    async def live_state(self, timeout: Optional[float] = None) -> dict[str, LiveInterfaceState]:
        result = await self._run([self.ip_path, "-json", "address", "show"], timeout)
        if not result.success:
            raise ToolEnvironmentError(
                f"ip address show failed with status {result.returncode}: {result.stderr.strip()}",
                result.command,
            )
        return parse_ip_json(result.stdout)

    async def _run(self, command: list[str], timeout: Optional[float]) -> ToolResult:
        """Run ``command``, bounded by ``timeout`` seconds."""
        timeout = self.default_timeout if timeout is None else timeout
        logger.debug(f"Running: {' '.join(command)} (timeout {timeout}s)")
        start = time.perf_counter()

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ToolEnvironmentError(f"Cannot run {command[0]}: {e}", command) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ToolTimeoutError(
                f"{command[0]} did not finish within {timeout}s", command,
            ) from None

        result = ToolResult(
            command=command,
            returncode=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        if not result.success:
            logger.debug(f"{command[0]} exited {result.returncode}: {result.stderr.strip()[:500]}")
        return result


def parse_ip_json(output: str) -> dict[str, LiveInterfaceState]:
    """Parse ``ip -json address show`` output."""
    try:
        links = json.loads(output or "[]")
    except json.JSONDecodeError as e:
        raise ToolEnvironmentError(f"Unparseable ip output: {e}") from e

    states: dict[str, LiveInterfaceState] = {}
    for link in links:
        name = link.get("ifname")
        if not name:
            continue
        addresses = [
            f"{a['local']}/{a['prefixlen']}"
            for a in link.get("addr_info", [])
            if "local" in a and "prefixlen" in a
        ]
        states[name] = LiveInterfaceState(
            name=name,
            admin_up="UP" in link.get("flags", []),
            operstate=link.get("operstate", "UNKNOWN"),
            addresses=addresses,
            mtu=link.get("mtu"),
        )
    return states
