"""Tests for the dry-run layer and the host tool executor."""
import shutil

import pytest

from netwarden.config import Interface, NetworkConfiguration
from netwarden.config_engine import (
    ConfigValidator,
    DryRunValidator,
    FindingCategory,
    IfupdownTool,
    Severity,
    ToolEnvironmentError,
    ToolResult,
    ToolTimeoutError,
)
from netwarden.config_engine.executor import parse_ip_json

from conftest import FakeTool


@pytest.fixture
def config():
    return NetworkConfiguration(interfaces=[Interface("eth0"), Interface("vmbr0")], auto=["eth0"])


class TestTranslate:
    """Tests for mapping tool output to findings."""

    def test_clean_check(self):
        assert DryRunValidator(FakeTool()).translate(ToolResult(["ifup"], 0), {"eth0"}) == []

    def test_diagnostics_located_at_interface(self):
        result = ToolResult(
            ["ifup"], 1,
            stderr="error: vmbr0: bridge port eth9 does not exist\nwarning: eth0: link speed unknown\n",
        )
        findings = DryRunValidator(FakeTool()).translate(result, {"eth0", "vmbr0"})

        assert [(f.severity, f.interface) for f in findings] == [
            (Severity.ERROR, "vmbr0"),
            (Severity.WARNING, "eth0"),
        ]
        assert findings[0].message == "bridge port eth9 does not exist"
        assert all(f.code == "dry-run" and f.stage == "dry_run" for f in findings)

    def test_unknown_interface_kept_in_message(self):
        result = ToolResult(["ifup"], 1, stderr="error: eth9: does not exist")
        findings = DryRunValidator(FakeTool()).translate(result, {"eth0"})

        assert findings[0].interface is None
        assert findings[0].message == "eth9: does not exist"

    def test_rejection_without_diagnostics(self):
        result = ToolResult(["ifup"], 1, stderr="something odd")
        findings = DryRunValidator(FakeTool()).translate(result, set())

        assert len(findings) == 1
        assert findings[0].is_error
        assert findings[0].category == FindingCategory.CONFIGURATION

    def test_crash_is_environment(self):
        findings = DryRunValidator(FakeTool()).translate(ToolResult(["ifup"], -9), set())

        assert findings[0].code == "environment"
        assert findings[0].category == FindingCategory.ENVIRONMENT
        assert "signal 9" in findings[0].message

    def test_unexpected_status_is_environment(self):
        findings = DryRunValidator(FakeTool()).translate(ToolResult(["ifup"], 127, stderr="not found"), set())
        assert findings[0].category == FindingCategory.ENVIRONMENT


class TestDryRunValidator:
    """Tests for running the check."""

    @pytest.mark.asyncio
    async def test_missing_tool_is_environment_error(self, config):
        tool = FakeTool()
        tool.check_error = ToolEnvironmentError("Cannot run /sbin/ifup: No such file")
        findings = await DryRunValidator(tool).validate(config, "content")

        assert len(findings) == 1
        assert findings[0].severity == Severity.ERROR
        assert findings[0].category == FindingCategory.ENVIRONMENT

    @pytest.mark.asyncio
    async def test_missing_tool_is_warning_when_not_required(self, config):
        tool = FakeTool()
        tool.check_error = ToolEnvironmentError("Cannot run /sbin/ifup")
        findings = await DryRunValidator(tool, required=False).validate(config, "content")

        assert findings[0].severity == Severity.WARNING

    @pytest.mark.asyncio
    async def test_timeout_is_environment_error(self, config):
        tool = FakeTool()
        tool.check_error = ToolTimeoutError("/sbin/ifup did not finish within 1s")
        findings = await DryRunValidator(tool).validate(config, "content")

        assert findings[0].category == FindingCategory.ENVIRONMENT
        assert "timed out" in findings[0].message


class TestConfigValidator:
    """Tests for the layered pipeline."""

    @pytest.mark.asyncio
    async def test_syntax_errors_stop_pipeline(self):
        tool = FakeTool()
        validator = ConfigValidator(dry_run=DryRunValidator(tool))
        config = NetworkConfiguration(interfaces=[Interface("eth0"), Interface("eth0")], auto=["eth9"])

        result = await validator.validate(config)

        assert result.stage == "syntax"
        assert [f.code for f in result.errors] == ["duplicate-name"]
        assert tool.calls == []

    @pytest.mark.asyncio
    async def test_dry_run_receives_rendered_content(self, vmbr0_config):
        tool = FakeTool()
        validator = ConfigValidator(dry_run=DryRunValidator(tool))

        result = await validator.validate(vmbr0_config)

        assert result.valid
        assert result.stage == "dry_run"
        assert "iface vmbr0 inet static" in tool.checked[0]

    @pytest.mark.asyncio
    async def test_environment_error_flagged(self, vmbr0_config):
        tool = FakeTool()
        tool.check_error = ToolEnvironmentError("Cannot run /sbin/ifup")
        result = await ConfigValidator(dry_run=DryRunValidator(tool)).validate(vmbr0_config)

        assert not result.valid
        assert result.environment_error


class TestIfupdownTool:
    """Tests for the subprocess-backed tool."""

    @pytest.mark.asyncio
    async def test_missing_binary_raises_environment_error(self):
        tool = IfupdownTool(ifreload_path="/nonexistent/ifreload")
        with pytest.raises(ToolEnvironmentError, match="Cannot run"):
            await tool.apply(timeout=5)

    @pytest.mark.asyncio
    async def test_check_runs_command(self):
        true = shutil.which("true")
        if true is None:
            pytest.skip("true(1) not available")
        result = await IfupdownTool(ifup_path=true).check("auto lo\n", timeout=5)

        assert result.success
        assert result.command[0] == true
        assert "--no-act" in result.command

    def test_from_settings(self, settings):
        tool = IfupdownTool.from_settings(settings)
        assert tool.ifreload_path == settings.ifreload_path
        assert tool.default_timeout == settings.dry_run_timeout


class TestParseIpJson:
    """Tests for parsing `ip -json address show`."""

    def test_parse(self):
        output = """[
            {"ifname": "lo", "flags": ["LOOPBACK", "UP", "LOWER_UP"], "mtu": 65536, "operstate": "UNKNOWN",
             "addr_info": [{"family": "inet", "local": "127.0.0.1", "prefixlen": 8}]},
            {"ifname": "vmbr0", "flags": ["BROADCAST", "UP"], "mtu": 1500, "operstate": "UP",
             "addr_info": [{"family": "inet", "local": "192.168.1.10", "prefixlen": 24},
                           {"family": "inet6", "local": "fe80::1", "prefixlen": 64}]},
            {"ifname": "eth1", "flags": ["BROADCAST"], "mtu": 1500, "operstate": "DOWN", "addr_info": []}
        ]"""
        states = parse_ip_json(output)

        assert set(states) == {"lo", "vmbr0", "eth1"}
        assert states["vmbr0"].admin_up
        assert states["vmbr0"].addresses == ["192.168.1.10/24", "fe80::1/64"]
        assert not states["eth1"].admin_up
        assert states["lo"].mtu == 65536

    def test_garbage_raises_environment_error(self):
        with pytest.raises(ToolEnvironmentError):
            parse_ip_json("not json")
