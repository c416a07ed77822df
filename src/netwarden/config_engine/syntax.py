"""Structural validation of a configuration.

Checks everything that can be decided from the text of a single stanza
plus the dependency graph: names, ranges, option syntax, references and
cycles. Malformed input always becomes a finding; nothing here raises.
"""
import re
from typing import Any, Iterable, Optional

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
    normalize_bond_mode,
    parse_cidr,
    parse_ip,
)
from .generator import managed_option_values
from .graph import DependencyGraph
from .schema import Finding, Severity

# IFNAMSIZ is 16 including the terminating NUL
MAX_NAME_LENGTH = 15
NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_.-]*$")
OPTION_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
MAC_PATTERN = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")

MIN_MTU = 68
MAX_MTU = 65535
MIN_VLAN_TAG = 1
MAX_VLAN_TAG = 4094
MAX_VNI = (1 << 24) - 1

KIND_TYPES = (Physical, Loopback, Bridge, Bond, Vlan, Vxlan)

STAGE = "syntax"


def is_valid_name(name: Any) -> bool:
    """True for a usable Linux interface name."""
    return (
        isinstance(name, str)
        and 0 < len(name) <= MAX_NAME_LENGTH
        and bool(NAME_PATTERN.match(name))
    )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class SyntaxValidator:
    """First validation layer."""

    def validate(
        self,
        config: NetworkConfiguration,
        live_interfaces: Iterable[str] = (),
    ) -> list[Finding]:
        """Validate ``config``; ``live_interfaces`` satisfy references too.

        Returns:
            Findings in configuration order, dependency findings last
        """
        findings: list[Finding] = []

        if not isinstance(config, NetworkConfiguration) or not isinstance(config.interfaces, list):
            return [self._error("invalid-config", "Configuration has no interface list")]

        seen: set[str] = set()
        reported: set[str] = set()
        for iface in config.interfaces:
            if not isinstance(iface, Interface):
                findings.append(self._error("invalid-interface", f"Not an interface entry: {iface!r}"))
                continue

            if isinstance(iface.name, str) and iface.name in seen:
                if iface.name not in reported:
                    reported.add(iface.name)
                    findings.append(self._error(
                        "duplicate-name",
                        f"Interface '{iface.name}' is defined more than once",
                        iface.name, "name",
                    ))
                continue
            if isinstance(iface.name, str):
                seen.add(iface.name)

            findings.extend(self._validate_interface(iface))

        findings.extend(self._validate_dependencies(config, live_interfaces))
        return findings

    # === Per-interface checks ===

    def _validate_interface(self, iface: Interface) -> list[Finding]:
        findings: list[Finding] = []
        name = iface.name

        if not is_valid_name(name):
            findings.append(self._error(
                "invalid-name",
                f"Invalid interface name {name!r}: must start with a letter, contain only "
                f"letters, digits, '_', '.', '-' and be at most {MAX_NAME_LENGTH} characters",
                name if isinstance(name, str) else None, "name",
            ))
            label = None
        else:
            label = name

        if not isinstance(iface.kind, KIND_TYPES):
            findings.append(self._error(
                "invalid-type", f"Unknown interface type {type(iface.kind).__name__}", label, "kind",
            ))
            return findings

        findings.extend(self._validate_kind(iface, label))
        findings.extend(self._validate_method(iface, label))
        findings.extend(self._validate_addresses(iface, label))
        findings.extend(self._validate_mtu(iface, label))
        findings.extend(self._validate_options(iface, label))
        if not any(f.is_error for f in findings):
            findings.extend(self._check_managed_options(iface, label))
        if label:
            findings.extend(self._naming_advisories(iface))
        return findings

    def _validate_kind(self, iface: Interface, name: Optional[str]) -> list[Finding]:
        kind = iface.kind
        findings: list[Finding] = []

        if isinstance(kind, Bridge):
            findings.extend(self._validate_name_list(kind.ports, name, "ports", allow_empty=True))
            if not isinstance(kind.vlan_aware, bool):
                findings.append(self._error(
                    "invalid-bridge", f"vlan_aware must be a boolean, got {kind.vlan_aware!r}", name, "vlan_aware",
                ))

        elif isinstance(kind, Bond):
            findings.extend(self._validate_name_list(kind.slaves, name, "slaves", allow_empty=False))
            if normalize_bond_mode(kind.mode) is None:
                findings.append(self._error(
                    "invalid-bond-mode", f"Unsupported bond mode {kind.mode!r}", name, "mode",
                ))

        elif isinstance(kind, Vlan):
            if not is_valid_name(kind.parent):
                findings.append(self._error(
                    "invalid-reference", f"Invalid VLAN parent name {kind.parent!r}", name, "parent",
                ))
            if not _is_int(kind.tag) or not MIN_VLAN_TAG <= kind.tag <= MAX_VLAN_TAG:
                findings.append(self._error(
                    "vlan-tag-range",
                    f"VLAN tag {kind.tag!r} out of range ({MIN_VLAN_TAG}-{MAX_VLAN_TAG})",
                    name, "tag",
                ))

        elif isinstance(kind, Vxlan):
            findings.extend(self._validate_vxlan(kind, name))

        elif isinstance(kind, Loopback):
            if isinstance(iface.method, AddressMethod) and iface.method not in (
                AddressMethod.LOOPBACK, AddressMethod.MANUAL, AddressMethod.STATIC,
            ):
                findings.append(self._error(
                    "invalid-method", f"Loopback cannot use method '{iface.method.value}'", name, "method",
                ))

        return findings

    def _validate_vxlan(self, kind: Vxlan, name: Optional[str]) -> list[Finding]:
        findings: list[Finding] = []

        if not _is_int(kind.vni) or not 0 <= kind.vni <= MAX_VNI:
            findings.append(self._error(
                "vxlan-id-range", f"VXLAN id {kind.vni!r} out of range (0-{MAX_VNI})", name, "vni",
            ))

        peers = kind.peers if isinstance(kind.peers, list) else None
        if peers is None:
            findings.append(self._error("invalid-vxlan", "peers must be a list", name, "peers"))
            peers = []
        has_peers = bool(peers)
        has_group = kind.multicast_group is not None
        if has_peers == has_group:
            findings.append(self._error(
                "vxlan-flood-mode",
                "VXLAN needs exactly one of a peer list or a multicast group",
                name, "peers",
            ))

        for peer in peers:
            if parse_ip(peer) is None:
                findings.append(self._error(
                    "invalid-address", f"VXLAN peer {peer!r} is not an IP address", name, "peers",
                ))
        if has_group:
            group = parse_ip(kind.multicast_group)
            if group is None or not group.is_multicast:
                findings.append(self._error(
                    "invalid-address",
                    f"VXLAN group {kind.multicast_group!r} is not a multicast address",
                    name, "multicast_group",
                ))
        if kind.local is not None and parse_ip(kind.local) is None:
            findings.append(self._error(
                "invalid-address", f"VXLAN local address {kind.local!r} is not an IP address", name, "local",
            ))
        if kind.dstport is not None and (not _is_int(kind.dstport) or not 1 <= kind.dstport <= 65535):
            findings.append(self._error(
                "invalid-port", f"VXLAN destination port {kind.dstport!r} out of range (1-65535)",
                name, "dstport",
            ))
        return findings

    def _validate_name_list(
        self,
        names: Any,
        iface_name: Optional[str],
        field_name: str,
        allow_empty: bool,
    ) -> list[Finding]:
        if not isinstance(names, list):
            return [self._error(
                "invalid-reference", f"{field_name} must be a list of interface names", iface_name, field_name,
            )]
        findings: list[Finding] = []
        if not names and not allow_empty:
            findings.append(self._error(
                "empty-member-list", f"At least one entry is required in {field_name}", iface_name, field_name,
            ))
        for member in names:
            if not is_valid_name(member):
                findings.append(self._error(
                    "invalid-reference", f"Invalid interface name {member!r} in {field_name}",
                    iface_name, field_name,
                ))
        named = [n for n in names if isinstance(n, str)]
        if len(set(named)) != len(named):
            findings.append(Finding(
                Severity.WARNING, "duplicate-member", f"{field_name} lists an interface twice",
                iface_name, field_name, stage=STAGE,
            ))
        return findings

    def _validate_method(self, iface: Interface, name: Optional[str]) -> list[Finding]:
        if not isinstance(iface.method, AddressMethod):
            return [self._error(
                "invalid-method", f"Unknown address method {iface.method!r}", name, "method",
            )]
        if iface.method == AddressMethod.LOOPBACK and not isinstance(iface.kind, Loopback):
            return [self._error(
                "invalid-method", "Method 'loopback' is only valid for the loopback interface", name, "method",
            )]
        return []

    def _validate_addresses(self, iface: Interface, name: Optional[str]) -> list[Finding]:
        findings: list[Finding] = []

        if not isinstance(iface.addresses, list):
            return [self._error("invalid-address", "addresses must be a list", name, "addresses")]

        for address in iface.addresses:
            if parse_cidr(address) is None:
                findings.append(self._error(
                    "invalid-address",
                    f"Invalid address {address!r}: expected CIDR notation such as 192.0.2.10/24",
                    name, "addresses",
                ))

        if iface.gateway is not None and parse_ip(iface.gateway) is None:
            findings.append(self._error(
                "invalid-gateway", f"Invalid gateway {iface.gateway!r}: expected a bare IP address",
                name, "gateway",
            ))
        return findings

    def _validate_mtu(self, iface: Interface, name: Optional[str]) -> list[Finding]:
        mtu = iface.mtu
        if mtu is None:
            return []
        if not _is_int(mtu) or not MIN_MTU <= mtu <= MAX_MTU:
            return [self._error(
                "mtu-range", f"MTU {mtu!r} out of range ({MIN_MTU}-{MAX_MTU})", name, "mtu",
            )]
        return []

    # === Options ===

    def _validate_options(self, iface: Interface, name: Optional[str]) -> list[Finding]:
        if not isinstance(iface.options, dict):
            return [self._error("invalid-option", "options must be a mapping", name, "options")]

        findings: list[Finding] = []
        for key, value in iface.options.items():
            check = KNOWN_OPTIONS.get(key)
            if check is not None:
                problem = check(value)
                if problem:
                    findings.append(self._error(
                        "invalid-option", f"Option '{key}': {problem}", name, key,
                    ))
                continue

            if not isinstance(key, str) or not OPTION_KEY_PATTERN.match(key):
                findings.append(Finding(
                    Severity.INFO, "malformed-option",
                    f"Option key {key!r} contains characters other than letters, digits, '-' and '_'",
                    name, "options", stage=STAGE,
                ))
            elif not isinstance(value, str) or not value.strip():
                findings.append(Finding(
                    Severity.INFO, "malformed-option", f"Option '{key}' has an empty value",
                    name, key, stage=STAGE,
                ))
        return findings

    def _check_managed_options(self, iface: Interface, name: Optional[str]) -> list[Finding]:
        """Warn when an option the renderer owns disagrees with the typed field."""
        rendered = managed_option_values(iface)
        findings = []
        for key, value in iface.options.items():
            if key not in rendered or not isinstance(value, str):
                continue
            if _same_option_value(key, value, rendered[key]):
                continue
            findings.append(Finding(
                Severity.WARNING, "option-conflict",
                f"Option '{key} {value}' is not rendered; the {iface.kind.kind} settings give "
                f"'{key} {rendered[key] or '(omitted)'}'",
                name, key, stage=STAGE,
            ))
        return findings

    # === Naming conventions ===

    def _naming_advisories(self, iface: Interface) -> list[Finding]:
        kind = iface.kind
        name = iface.name
        message = None

        if isinstance(kind, Bridge) and not name.startswith(("br", "vmbr")):
            message = "Bridge names conventionally start with 'br' or 'vmbr'"
        elif isinstance(kind, Bond) and not name.startswith("bond"):
            message = "Bond names conventionally start with 'bond'"
        elif isinstance(kind, Vlan) and name not in (f"{kind.parent}.{kind.tag}", f"vlan{kind.tag}"):
            message = f"VLAN names conventionally follow '{kind.parent}.{kind.tag}'"
        elif isinstance(kind, Vxlan) and not name.startswith("vxlan"):
            message = "VXLAN names conventionally start with 'vxlan'"

        if message is None:
            return []
        return [Finding(Severity.WARNING, "naming-convention", message, name, "name", stage=STAGE)]

    # === Dependencies ===

    def _validate_dependencies(
        self,
        config: NetworkConfiguration,
        live_interfaces: Iterable[str],
    ) -> list[Finding]:
        graph = DependencyGraph.build(config, live_interfaces)
        findings = [
            self._error(
                "missing-reference",
                f"'{ref.source}' references '{ref.target}' in {ref.field}, "
                f"which is neither configured nor present on the host",
                ref.source, ref.field,
            )
            for ref in graph.missing
        ]
        for cycle in graph.find_cycles():
            findings.append(self._error(
                "dependency-cycle",
                f"Dependency cycle: {' -> '.join(cycle)}",
                cycle[0], None,
            ))
        return findings

    @staticmethod
    def _error(code: str, message: str, interface: Optional[str] = None, field_name: Optional[str] = None) -> Finding:
        return Finding(Severity.ERROR, code, message, interface, field_name, stage=STAGE)


# --- Known option value checks ---
# Each returns None when the value is fine, otherwise a short problem description.

def _check_member_list(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return "expected a space-separated list of interfaces or 'none'"
    members = value.split()
    if members == ["none"]:
        return None
    bad = [m for m in members if not is_valid_name(m)]
    if bad:
        return f"invalid interface name(s): {', '.join(bad)}"
    return None


def _check_bond_mode(value: Any) -> Optional[str]:
    if normalize_bond_mode(value) is None:
        return f"unsupported bond mode {value!r}"
    return None


def _check_unsigned(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip().isdigit():
        return f"expected a non-negative integer, got {value!r}"
    return None


def _check_name(value: Any) -> Optional[str]:
    if not is_valid_name(value):
        return f"invalid interface name {value!r}"
    return None


def _check_mac(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not MAC_PATTERN.match(value.strip()):
        return f"invalid MAC address {value!r}"
    return None


def _check_vids(value: Any) -> Optional[str]:
    if parse_vid_ranges(value) is None:
        return f"expected VLAN ids or ranges such as '2-4094', got {value!r}"
    return None


KNOWN_OPTIONS = {
    "bridge-ports": _check_member_list,
    "bond-slaves": _check_member_list,
    "bond-mode": _check_bond_mode,
    "bond-miimon": _check_unsigned,
    "vlan-raw-device": _check_name,
    "hwaddress": _check_mac,
    "bridge-vids": _check_vids,
}


# Options whose value is an unordered list of words
WORD_SET_OPTIONS = {"address", "bridge-ports", "bond-slaves", "vxlan-remoteip"}
TRUE_WORDS = {"yes", "on", "1", "true"}


def _same_option_value(key: str, given: str, rendered: str) -> bool:
    if key == "bond-mode":
        return normalize_bond_mode(given) == normalize_bond_mode(rendered)
    if key == "bridge-vlan-aware":
        return (given.strip().lower() in TRUE_WORDS) == (rendered in TRUE_WORDS)
    given_words = [w for w in given.split() if not (key == "bridge-ports" and w == "none")]
    rendered_words = [w for w in rendered.split() if not (key == "bridge-ports" and w == "none")]
    if key in WORD_SET_OPTIONS:
        return set(given_words) == set(rendered_words)
    return given_words == rendered_words


def parse_vid_ranges(value: Any) -> Optional[set[int]]:
    """Parse a ``bridge-vids`` value like "2-100 200 300-310"."""
    if not isinstance(value, str) or not value.strip():
        return None
    vids: set[int] = set()
    for part in value.split():
        low, sep, high = part.partition("-")
        if not low.isdigit() or (sep and not high.isdigit()):
            return None
        start, end = int(low), int(high) if sep else int(low)
        if not MIN_VLAN_TAG <= start <= end <= MAX_VLAN_TAG:
            return None
        vids.update(range(start, end + 1))
    return vids

