"""Shared fixtures: a scripted InterfaceTool and an engine rooted in tmp_path."""
import asyncio
from typing import Optional

import pytest

from netwarden.config import (
    AddressMethod,
    Bridge,
    Interface,
    Loopback,
    NetworkConfiguration,
    Physical,
    Settings,
)
from netwarden.config_engine import (
    ApplyEngine,
    InterfaceTool,
    LiveInterfaceState,
    ToolResult,
)


class FakeTool(InterfaceTool):
    """Records every call; results are scripted per test.

    ``apply_results`` is consumed one entry per ``apply()`` call; an entry may
    be a ToolResult or an exception to raise. When the list runs out, apply
    succeeds. ``live`` is what ``live_state()`` reports.
    """

    name = "fake"

    def __init__(self):
        self.calls: list[str] = []
        self.checked: list[str] = []
        self.check_result = ToolResult(["fake-check"], 0)
        self.check_error: Optional[Exception] = None
        self.check_delay = 0.0
        self.apply_results: list = []
        self.apply_delay = 0.0
        self.live: dict[str, LiveInterfaceState] = {}
        self.live_error: Optional[Exception] = None
        self.live_sequence: list[dict[str, LiveInterfaceState]] = []

    async def check(self, content, timeout=None):
        self.calls.append("check")
        self.checked.append(content)
        if self.check_delay:
            await asyncio.sleep(self.check_delay)
        if self.check_error:
            raise self.check_error
        return self.check_result

    async def apply(self, timeout=None):
        self.calls.append("apply")
        if self.apply_delay:
            await asyncio.sleep(self.apply_delay)
        if self.apply_results:
            outcome = self.apply_results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return ToolResult(["fake-apply"], 0)

    async def live_state(self, timeout=None):
        self.calls.append("live_state")
        if self.live_error:
            raise self.live_error
        if self.live_sequence:
            return self.live_sequence.pop(0)
        return dict(self.live)

    def bring_up(self, config: NetworkConfiguration) -> None:
        """Make live state match ``config``."""
        self.live = {
            iface.name: LiveInterfaceState(
                name=iface.name, admin_up=True, operstate="UP", addresses=list(iface.addresses),
            )
            for iface in config.interfaces
        }


def up(name: str, *addresses: str) -> LiveInterfaceState:
    return LiveInterfaceState(name=name, admin_up=True, operstate="UP", addresses=list(addresses))


def failed(returncode: int = 1, stderr: str = "error: apply failed") -> ToolResult:
    return ToolResult(["fake-apply"], returncode, stderr=stderr)


@pytest.fixture
def settings(tmp_path) -> Settings:
    interfaces = tmp_path / "etc" / "interfaces"
    interfaces.parent.mkdir()
    interfaces.write_text("auto lo\niface lo inet loopback\n\nauto eth0\niface eth0 inet manual\n")
    return Settings(
        interfaces_path=interfaces,
        base_dir=tmp_path / "lib",
        verify_attempts=3,
        verify_interval=0.01,
        verify_timeout=5.0,
        lock_timeout=5.0,
    )


@pytest.fixture
def tool() -> FakeTool:
    return FakeTool()


@pytest.fixture
def engine(settings, tool) -> ApplyEngine:
    return ApplyEngine(settings, tool=tool)


@pytest.fixture
def prior_config() -> NetworkConfiguration:
    return NetworkConfiguration(
        interfaces=[
            Interface("lo", kind=Loopback(), method=AddressMethod.LOOPBACK),
            Interface("eth0", kind=Physical(), method=AddressMethod.MANUAL),
        ],
        auto=["lo", "eth0"],
    )


@pytest.fixture
def vmbr0_config(prior_config) -> NetworkConfiguration:
    config = NetworkConfiguration(
        interfaces=list(prior_config.interfaces) + [
            Interface(
                "vmbr0",
                kind=Bridge(ports=["eth0"]),
                method=AddressMethod.STATIC,
                addresses=["192.168.1.10/24"],
                gateway="192.168.1.1",
            ),
        ],
        auto=["lo", "eth0", "vmbr0"],
    )
    return config
