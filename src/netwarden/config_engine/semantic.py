"""Cross-interface validation.

Runs only on configurations that passed the syntax layer, so every value
here is already well-formed; the checks are about how interfaces relate
to each other and whether the result is a network that can work.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional

from ..config.schema import (
    AddressMethod,
    Bond,
    Bridge,
    Interface,
    Loopback,
    NetworkConfiguration,
    Physical,
    Vlan,
    Vxlan,
    parse_cidr,
    parse_ip,
)
from .graph import DependencyGraph
from .schema import Finding, Severity
from .syntax import parse_vid_ranges

logger = logging.getLogger(__name__)

STAGE = "semantic"

_POLICY_SEVERITY = {
    "error": Severity.ERROR,
    "warning": Severity.WARNING,
    "ignore": None,
}


@dataclass
class OverlapPolicy:
    """How to treat subnets that overlap between two interfaces.

    ``related`` applies when one interface is stacked on the other (a VLAN
    and its parent bridge), ``unrelated`` to everything else.
    """
    unrelated: str = "error"
    related: str = "warning"

    @classmethod
    def from_settings(cls, settings) -> "OverlapPolicy":
        return cls(unrelated=settings.overlap_unrelated, related=settings.overlap_related)


class SemanticValidator:
    """Second validation layer."""

    def __init__(self, overlap_policy: Optional[OverlapPolicy] = None):
        self.overlap_policy = overlap_policy or OverlapPolicy()

    def validate(
        self,
        config: NetworkConfiguration,
        live_interfaces: Iterable[str] = (),
    ) -> list[Finding]:
        """
        Validate relationships within ``config``.

        Checks:
        - Address method versus configured addresses and gateway
        - Duplicate addresses and overlapping subnets
        - auto / allow-hotplug lists naming real interfaces
        - Gateway reachability from the interface's own subnets
        - Ports and slaves claimed by more than one master
        - Port and slave kinds, VLAN protocol and VID compatibility
        - Duplicate VLAN and VXLAN ids, MTU stacking

        Args:
            config: Configuration that passed syntax validation
            live_interfaces: Names present on the host but not in ``config``

        Returns:
            Findings in configuration order
        """
        graph = DependencyGraph.build(config, live_interfaces)
        findings: list[Finding] = []

        for iface in config.interfaces:
            findings.extend(self._check_method(iface))
            findings.extend(self._check_gateway(iface))
        findings.extend(self._check_addresses(config, graph))
        findings.extend(self._check_default_gateways(config))
        findings.extend(self._check_start_lists(config))
        findings.extend(self._check_masters(config))
        findings.extend(self._check_member_kinds(config))
        findings.extend(self._check_vlans(config))
        findings.extend(self._check_vxlans(config))
        findings.extend(self._check_mtu(config, graph))
        logger.debug(f"Semantic validation produced {len(findings)} findings")
        return findings

    # === Addressing ===

    def _check_method(self, iface: Interface) -> list[Finding]:
        method = iface.method
        if method == AddressMethod.STATIC and not iface.addresses and not isinstance(iface.kind, Loopback):
            return [self._finding(
                Severity.ERROR, "static-without-address",
                "Static method requires at least one address", iface.name, "addresses",
            )]
        if method in (AddressMethod.DHCP, AddressMethod.NONE):
            findings = []
            if iface.addresses:
                findings.append(self._finding(
                    Severity.ERROR, "address-method-conflict",
                    f"Method '{method.value}' cannot carry static addresses", iface.name, "addresses",
                ))
            if iface.gateway:
                findings.append(self._finding(
                    Severity.ERROR, "address-method-conflict",
                    f"Method '{method.value}' cannot carry a gateway", iface.name, "gateway",
                ))
            return findings
        return []

    def _check_gateway(self, iface: Interface) -> list[Finding]:
        if not iface.gateway or iface.method in (AddressMethod.DHCP, AddressMethod.NONE):
            return []
        gateway = parse_ip(iface.gateway)
        networks = [
            a.network for a in (parse_cidr(x) for x in iface.addresses)
            if a is not None and a.version == gateway.version
        ]
        if any(gateway in net for net in networks):
            return []
        if not networks:
            message = f"Gateway {iface.gateway} has no IPv{gateway.version} address on {iface.name} to reach it from"
        else:
            message = (
                f"Gateway {iface.gateway} is not reachable from "
                f"{', '.join(str(n) for n in networks)}"
            )
        return [self._finding(Severity.ERROR, "gateway-unreachable", message, iface.name, "gateway")]

    def _check_addresses(self, config: NetworkConfiguration, graph: DependencyGraph) -> list[Finding]:
        findings: list[Finding] = []
        owners: dict = {}  # ip -> interface name
        parsed: list[tuple[Interface, list]] = []

        for iface in config.interfaces:
            seen_here = set()
            addresses = []
            for text in iface.addresses:
                address = parse_cidr(text)
                if address.ip in seen_here:
                    findings.append(self._finding(
                        Severity.WARNING, "duplicate-address",
                        f"Address {address.ip} is listed twice", iface.name, "addresses",
                    ))
                    continue
                seen_here.add(address.ip)
                owner = owners.get(address.ip)
                if owner is not None:
                    findings.append(self._finding(
                        Severity.ERROR, "duplicate-address",
                        f"Address {address.ip} is already assigned to {owner}", iface.name, "addresses",
                    ))
                else:
                    owners[address.ip] = iface.name
                addresses.append(address)
            parsed.append((iface, addresses))

        for i, (first, first_addrs) in enumerate(parsed):
            for second, second_addrs in parsed[i + 1:]:
                finding = self._check_overlap(first, first_addrs, second, second_addrs, graph)
                if finding:
                    findings.append(finding)

        return findings

    def _check_overlap(self, first, first_addrs, second, second_addrs, graph) -> Optional[Finding]:
        for a in first_addrs:
            for b in second_addrs:
                if a.version != b.version or a.ip == b.ip:
                    continue
                if not a.network.overlaps(b.network):
                    continue
                related = graph.related(first.name, second.name)
                action = self.overlap_policy.related if related else self.overlap_policy.unrelated
                severity = _POLICY_SEVERITY[action]
                if severity is None:
                    return None
                return self._finding(
                    severity, "subnet-overlap",
                    f"Subnet {b.network} overlaps {a.network} on {first.name}"
                    + (" (stacked interfaces)" if related else ""),
                    second.name, "addresses",
                )
        return None

    def _check_default_gateways(self, config: NetworkConfiguration) -> list[Finding]:
        by_family: dict[int, list[str]] = defaultdict(list)
        for iface in config.interfaces:
            gateway = parse_ip(iface.gateway) if iface.gateway else None
            if gateway is not None:
                by_family[gateway.version].append(iface.name)

        findings = []
        for version, names in sorted(by_family.items()):
            if len(names) > 1:
                findings.append(self._finding(
                    Severity.WARNING, "multiple-default-gateways",
                    f"IPv{version} default gateway set on {', '.join(names)}; only one default route can win",
                    names[1], "gateway",
                ))
        return findings

    # === Start lists ===

    def _check_start_lists(self, config: NetworkConfiguration) -> list[Finding]:
        names = set(config.names())
        findings = []
        for list_name, code in (("auto", "undefined-auto"), ("hotplug", "undefined-hotplug")):
            for name in getattr(config, list_name):
                if name not in names:
                    findings.append(self._finding(
                        Severity.ERROR, code,
                        f"'{name}' is listed in {list_name} but not defined",
                        name, list_name,
                    ))
        return findings

    # === Bridges and bonds ===

    def _check_masters(self, config: NetworkConfiguration) -> list[Finding]:
        masters: dict[str, list[str]] = defaultdict(list)
        for iface in config.interfaces:
            if isinstance(iface.kind, Bridge):
                members = iface.kind.ports
            elif isinstance(iface.kind, Bond):
                members = iface.kind.slaves
            else:
                continue
            # A member listed twice is a syntax warning, not a second master
            for member in dict.fromkeys(members):
                masters[member].append(iface.name)

        return [
            self._finding(
                Severity.ERROR, "multiple-masters",
                f"'{member}' is enslaved by more than one master: {', '.join(owners)}",
                member, None,
            )
            for member, owners in masters.items()
            if len(owners) > 1
        ]

    def _check_member_kinds(self, config: NetworkConfiguration) -> list[Finding]:
        findings = []
        for iface in config.interfaces:
            if isinstance(iface.kind, Bond):
                for slave in iface.kind.slaves:
                    member = config.get(slave)
                    if member is not None and not isinstance(member.kind, Physical):
                        findings.append(self._finding(
                            Severity.ERROR, "invalid-bond-slave",
                            f"Bond slave '{slave}' is a {member.kind.kind}; only physical interfaces can be bonded",
                            iface.name, "slaves",
                        ))
            elif isinstance(iface.kind, Bridge):
                for port in iface.kind.ports:
                    member = config.get(port)
                    if member is not None and isinstance(member.kind, (Bridge, Loopback)):
                        findings.append(self._finding(
                            Severity.ERROR, "invalid-bridge-port",
                            f"Bridge port '{port}' is a {member.kind.kind} and cannot be bridged",
                            iface.name, "ports",
                        ))
        return findings

    # === VLAN / VXLAN ===

    def _check_vlans(self, config: NetworkConfiguration) -> list[Finding]:
        findings = []
        seen: dict[tuple[str, int], str] = {}

        for iface in config.interfaces:
            if not isinstance(iface.kind, Vlan):
                continue
            vlan = iface.kind

            key = (vlan.parent, vlan.tag)
            if key in seen:
                findings.append(self._finding(
                    Severity.ERROR, "duplicate-vlan",
                    f"VLAN {vlan.tag} on {vlan.parent} is already defined by {seen[key]}",
                    iface.name, "tag",
                ))
            else:
                seen[key] = iface.name

            parent = config.get(vlan.parent)
            if parent is None or not isinstance(parent.kind, Bridge):
                continue

            protocol = iface.options.get("vlan-protocol")
            bridge_protocol = parent.options.get("bridge-vlan-protocol")
            if protocol and not parent.kind.vlan_aware:
                findings.append(self._finding(
                    Severity.ERROR, "vlan-protocol-conflict",
                    f"vlan-protocol {protocol} requires '{parent.name}' to be VLAN-aware",
                    iface.name, "vlan-protocol",
                ))
            elif protocol and bridge_protocol and protocol != bridge_protocol:
                findings.append(self._finding(
                    Severity.ERROR, "vlan-protocol-conflict",
                    f"vlan-protocol {protocol} differs from {parent.name} bridge-vlan-protocol {bridge_protocol}",
                    iface.name, "vlan-protocol",
                ))

            if parent.kind.vlan_aware and "bridge-vids" in parent.options:
                vids = parse_vid_ranges(parent.options["bridge-vids"]) or set()
                if vlan.tag not in vids:
                    findings.append(self._finding(
                        Severity.ERROR, "vlan-not-allowed",
                        f"VLAN {vlan.tag} is not in {parent.name} bridge-vids ({parent.options['bridge-vids']})",
                        iface.name, "tag",
                    ))
        return findings

    def _check_vxlans(self, config: NetworkConfiguration) -> list[Finding]:
        findings = []
        seen: dict[int, str] = {}
        for iface in config.interfaces:
            if not isinstance(iface.kind, Vxlan):
                continue
            vni = iface.kind.vni
            if vni in seen:
                findings.append(self._finding(
                    Severity.ERROR, "duplicate-vni",
                    f"VXLAN id {vni} is already used by {seen[vni]}", iface.name, "vni",
                ))
            else:
                seen[vni] = iface.name
        return findings

    # === MTU ===

    def _check_mtu(self, config: NetworkConfiguration, graph: DependencyGraph) -> list[Finding]:
        findings = []
        for iface in config.interfaces:
            if iface.mtu is None:
                continue
            for dep_name in graph.dependencies_of(iface.name):
                dep = config.get(dep_name)
                if dep is not None and dep.mtu is not None and iface.mtu > dep.mtu:
                    findings.append(self._finding(
                        Severity.WARNING, "mtu-exceeds-lower",
                        f"MTU {iface.mtu} is larger than {dep.name} MTU {dep.mtu}",
                        iface.name, "mtu",
                    ))
        return findings

    @staticmethod
    def _finding(
        severity: Severity,
        code: str,
        message: str,
        interface: Optional[str],
        field_name: Optional[str],
    ) -> Finding:
        return Finding(severity, code, message, interface, field_name, stage=STAGE)
