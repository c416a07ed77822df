"""Render a configuration as an ifupdown2 ``interfaces(5)`` file.

The output is deterministic: the same configuration always renders to the
same bytes, which is what makes checksums and version comparisons useful.
"""
from ..config.schema import (
    AddressMethod,
    Bond,
    Bridge,
    Interface,
    Loopback,
    NetworkConfiguration,
    Vlan,
    Vxlan,
    normalize_bond_mode,
    parse_cidr,
)

HEADER = "# network interface settings; generated by netwarden\n"
INDENT = "\t"

# Options rendered from typed fields; a copy in ``options`` overrides the default
BRIDGE_DEFAULTS = {"bridge-stp": "off", "bridge-fd": "0"}
BOND_DEFAULTS = {"bond-miimon": "100"}

MANAGED_KEYS = {
    "bridge": {"bridge-ports", "bridge-vlan-aware", *BRIDGE_DEFAULTS},
    "bond": {"bond-slaves", "bond-mode", *BOND_DEFAULTS},
    "vlan": {"vlan-raw-device", "vlan-id"},
    "vxlan": {"vxlan-id", "vxlan-local-tunnelip", "vxlan-remoteip", "vxlan-svcnodeip", "vxlan-port"},
}
COMMON_KEYS = {"address", "gateway", "mtu"}


def managed_option_values(iface: Interface) -> dict[str, str]:
    """What the renderer writes for each key it owns, from the typed fields.

    A same-named entry in ``iface.options`` is never rendered. Empty strings
    mean the key is left out.
    """
    kind = iface.kind
    values = {
        "address": " ".join(iface.addresses),
        "gateway": iface.gateway or "",
        "mtu": "" if iface.mtu is None else str(iface.mtu),
    }
    if isinstance(kind, Bridge):
        values["bridge-ports"] = " ".join(kind.ports) or "none"
        values["bridge-vlan-aware"] = "yes" if kind.vlan_aware else "no"
    elif isinstance(kind, Bond):
        values["bond-slaves"] = " ".join(kind.slaves)
        values["bond-mode"] = normalize_bond_mode(kind.mode) or str(kind.mode or "")
    elif isinstance(kind, Vlan):
        values["vlan-raw-device"] = kind.parent
        values["vlan-id"] = str(kind.tag)
    elif isinstance(kind, Vxlan):
        values["vxlan-id"] = str(kind.vni)
        values["vxlan-local-tunnelip"] = kind.local or ""
        values["vxlan-remoteip"] = " ".join(kind.peers)
        values["vxlan-svcnodeip"] = kind.multicast_group or ""
        values["vxlan-port"] = "" if kind.dstport is None else str(kind.dstport)
    return values


class InterfacesRenderer:
    """Materialize a NetworkConfiguration as interfaces(5) text."""

    def render(self, config: NetworkConfiguration) -> str:
        """
        Render ``config``.

        Interfaces keep configuration order. Each stanza is preceded by its
        ``auto`` / ``allow-hotplug`` lines. IPv6 addresses go in a separate
        ``inet6`` stanza after the ``inet`` one.

        Args:
            config: A validated configuration

        Returns:
            File content ending in a newline
        """
        auto = set(config.auto)
        hotplug = set(config.hotplug)
        blocks = [HEADER.rstrip("\n")]

        for iface in config.interfaces:
            lines = []
            if iface.name in auto:
                lines.append(f"auto {iface.name}")
            if iface.name in hotplug:
                lines.append(f"allow-hotplug {iface.name}")
            lines.extend(self._render_interface(iface))
            blocks.append("\n".join(lines))

        return "\n\n".join(blocks) + "\n"

    def _render_interface(self, iface: Interface) -> list[str]:
        v4, v6 = [], []
        for text in iface.addresses:
            address = parse_cidr(text)
            (v6 if address is not None and address.version == 6 else v4).append(text)

        gw4 = gw6 = None
        if iface.gateway:
            if ":" in iface.gateway:
                gw6 = iface.gateway
            else:
                gw4 = iface.gateway

        method = self._method_word(iface)
        only_v6 = iface.method == AddressMethod.STATIC and v6 and not v4

        lines = []
        if not only_v6:
            lines.append(f"iface {iface.name} inet {method}")
            lines.extend(self._comment_lines(iface))
            lines.extend(f"{INDENT}address {a}" for a in v4)
            if gw4:
                lines.append(f"{INDENT}gateway {gw4}")
            lines.extend(self._body_lines(iface))

        if v6 or gw6:
            if lines:
                lines.append("")
            lines.append(f"iface {iface.name} inet6 static")
            if only_v6:
                lines.extend(self._comment_lines(iface))
            lines.extend(f"{INDENT}address {a}" for a in v6)
            if gw6:
                lines.append(f"{INDENT}gateway {gw6}")
            if only_v6:
                lines.extend(self._body_lines(iface))

        return lines

    @staticmethod
    def _method_word(iface: Interface) -> str:
        if isinstance(iface.kind, Loopback) and iface.method in (AddressMethod.LOOPBACK, AddressMethod.MANUAL):
            return "loopback"
        if iface.method == AddressMethod.NONE:
            return "manual"
        return iface.method.value

    @staticmethod
    def _comment_lines(iface: Interface) -> list[str]:
        if not iface.comment:
            return []
        return [f"#{line}" for line in iface.comment.splitlines()]

    def _body_lines(self, iface: Interface) -> list[str]:
        """MTU, kind settings and pass-through options."""
        lines = []
        if iface.mtu is not None:
            lines.append(f"{INDENT}mtu {iface.mtu}")
        lines.extend(f"{INDENT}{line}" for line in self._kind_lines(iface))

        skip = COMMON_KEYS | MANAGED_KEYS.get(iface.kind.kind, set())
        for key, value in iface.options.items():
            if key in skip:
                continue
            lines.append(f"{INDENT}{key} {value}".rstrip())
        return lines

    def _kind_lines(self, iface: Interface) -> list[str]:
        kind = iface.kind
        options = iface.options

        if isinstance(kind, Bridge):
            lines = [f"bridge-ports {' '.join(kind.ports) if kind.ports else 'none'}"]
            lines.extend(f"{key} {options.get(key, default)}" for key, default in BRIDGE_DEFAULTS.items())
            if kind.vlan_aware:
                lines.append("bridge-vlan-aware yes")
            return lines

        if isinstance(kind, Bond):
            lines = [
                f"bond-slaves {' '.join(kind.slaves)}",
                f"bond-miimon {options.get('bond-miimon', BOND_DEFAULTS['bond-miimon'])}",
                f"bond-mode {normalize_bond_mode(kind.mode) or kind.mode}",
            ]
            return lines

        if isinstance(kind, Vlan):
            if iface.name == f"{kind.parent}.{kind.tag}":
                return []
            return [f"vlan-raw-device {kind.parent}", f"vlan-id {kind.tag}"]

        if isinstance(kind, Vxlan):
            lines = [f"vxlan-id {kind.vni}"]
            if kind.local:
                lines.append(f"vxlan-local-tunnelip {kind.local}")
            lines.extend(f"vxlan-remoteip {peer}" for peer in kind.peers)
            if kind.multicast_group:
                lines.append(f"vxlan-svcnodeip {kind.multicast_group}")
            if kind.dstport is not None:
                lines.append(f"vxlan-port {kind.dstport}")
            return lines

        return []
