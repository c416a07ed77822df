"""Host network configuration model.

A ``NetworkConfiguration`` is the in-memory form of an ``interfaces(5)``
file: an ordered list of interface stanzas plus the ``auto`` and
``allow-hotplug`` start lists. The model is deliberately permissive so that
a parser can hand over whatever it read and the validators report what is
wrong with it; nothing here rejects a value.
"""
import hashlib
import ipaddress
import json
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Optional, Union


class ConfigFormatError(ValueError):
    """A serialized configuration could not be turned back into a model."""
    pass


class AddressMethod(str, Enum):
    """How an interface obtains its addresses."""
    STATIC = "static"
    DHCP = "dhcp"
    MANUAL = "manual"
    NONE = "none"
    LOOPBACK = "loopback"


# Linux bonding driver modes, by name and by numeric alias
BOND_MODES = {
    "balance-rr": "balance-rr",
    "active-backup": "active-backup",
    "balance-xor": "balance-xor",
    "broadcast": "broadcast",
    "802.3ad": "802.3ad",
    "balance-tlb": "balance-tlb",
    "balance-alb": "balance-alb",
    "0": "balance-rr",
    "1": "active-backup",
    "2": "balance-xor",
    "3": "broadcast",
    "4": "802.3ad",
    "5": "balance-tlb",
    "6": "balance-alb",
}


def normalize_bond_mode(mode: Any) -> Optional[str]:
    """Map a bond mode or its numeric alias to the mode name.

    Returns None for anything the bonding driver would not accept.
    """
    return BOND_MODES.get(str(mode).strip().lower()) if mode is not None else None


# --- Interface kinds ---

@dataclass
class Physical:
    """A hardware NIC."""
    kind: ClassVar[str] = "physical"

    def dependencies(self) -> list[tuple[str, str]]:
        return []


@dataclass
class Loopback:
    """The loopback device."""
    kind: ClassVar[str] = "loopback"

    def dependencies(self) -> list[tuple[str, str]]:
        return []


@dataclass
class Bridge:
    """A Linux bridge enslaving zero or more ports."""
    ports: list[str] = field(default_factory=list)
    vlan_aware: bool = False
    kind: ClassVar[str] = "bridge"

    def dependencies(self) -> list[tuple[str, str]]:
        if not isinstance(self.ports, list):
            return []
        return [(p, "ports") for p in self.ports if isinstance(p, str) and p]


@dataclass
class Bond:
    """A link aggregation of one or more slaves."""
    slaves: list[str] = field(default_factory=list)
    mode: str = "active-backup"
    kind: ClassVar[str] = "bond"

    def dependencies(self) -> list[tuple[str, str]]:
        if not isinstance(self.slaves, list):
            return []
        return [(s, "slaves") for s in self.slaves if isinstance(s, str) and s]


@dataclass
class Vlan:
    """An 802.1Q sub-interface of ``parent``."""
    parent: str = ""
    tag: int = 0
    kind: ClassVar[str] = "vlan"

    def dependencies(self) -> list[tuple[str, str]]:
        return [(self.parent, "parent")] if isinstance(self.parent, str) and self.parent else []


@dataclass
class Vxlan:
    """A VXLAN overlay endpoint.

    Flood traffic goes either to a static list of unicast ``peers`` or to a
    ``multicast_group``; exactly one of the two is set on a valid interface.
    """
    vni: int = 0
    peers: list[str] = field(default_factory=list)
    multicast_group: Optional[str] = None
    local: Optional[str] = None
    dstport: Optional[int] = None
    kind: ClassVar[str] = "vxlan"

    def dependencies(self) -> list[tuple[str, str]]:
        return []


InterfaceKind = Union[Physical, Loopback, Bridge, Bond, Vlan, Vxlan]

KIND_CLASSES: dict[str, type] = {
    cls.kind: cls for cls in (Physical, Loopback, Bridge, Bond, Vlan, Vxlan)
}


@dataclass
class Interface:
    """One interface stanza."""
    name: str
    kind: InterfaceKind = field(default_factory=Physical)
    method: AddressMethod = AddressMethod.MANUAL
    addresses: list[str] = field(default_factory=list)  # CIDR, e.g. "10.0.0.1/24"
    gateway: Optional[str] = None
    mtu: Optional[int] = None
    options: dict[str, str] = field(default_factory=dict)
    comment: Optional[str] = None

    def dependencies(self) -> list[tuple[str, str]]:
        """Names this interface needs to exist, with the field naming each."""
        return self.kind.dependencies()

    def to_dict(self) -> dict:
        kind_data = {"type": self.kind.kind}
        for f in fields(self.kind):
            value = getattr(self.kind, f.name)
            kind_data[f.name] = list(value) if isinstance(value, list) else value

        method = self.method.value if isinstance(self.method, AddressMethod) else self.method
        return {
            "name": self.name,
            "kind": kind_data,
            "method": method,
            "addresses": list(self.addresses),
            "gateway": self.gateway,
            "mtu": self.mtu,
            "options": dict(self.options),
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Interface":
        if not isinstance(data, dict) or "name" not in data:
            raise ConfigFormatError(f"Interface entry must be a mapping with a name: {data!r}")

        kind_data = dict(data.get("kind") or {"type": "physical"})
        kind_type = kind_data.pop("type", "physical")
        kind_cls = KIND_CLASSES.get(kind_type)
        if kind_cls is None:
            raise ConfigFormatError(f"Unknown interface type '{kind_type}' for {data['name']}")
        try:
            kind = kind_cls(**kind_data)
        except TypeError as e:
            raise ConfigFormatError(f"Bad {kind_type} settings for {data['name']}: {e}") from e

        method = data.get("method", AddressMethod.MANUAL.value)
        try:
            method = AddressMethod(method)
        except ValueError:
            pass  # left as-is for the validator to report

        return cls(
            name=data["name"],
            kind=kind,
            method=method,
            addresses=list(data.get("addresses") or []),
            gateway=data.get("gateway"),
            mtu=data.get("mtu"),
            options=dict(data.get("options") or {}),
            comment=data.get("comment"),
        )


@dataclass
class NetworkConfiguration:
    """A complete host network configuration."""
    interfaces: list[Interface] = field(default_factory=list)
    auto: list[str] = field(default_factory=list)
    hotplug: list[str] = field(default_factory=list)

    def get(self, name: str) -> Optional[Interface]:
        """First interface with ``name``, or None."""
        for iface in self.interfaces:
            if iface.name == name:
                return iface
        return None

    def names(self) -> list[str]:
        return [iface.name for iface in self.interfaces]

    def __contains__(self, name: object) -> bool:
        return self.get(name) is not None  # type: ignore[arg-type]

    def to_dict(self) -> dict:
        return {
            "interfaces": [iface.to_dict() for iface in self.interfaces],
            "auto": list(self.auto),
            "hotplug": list(self.hotplug),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "NetworkConfiguration":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigFormatError(f"Configuration must be a mapping, got {type(data).__name__}")
        interfaces = data.get("interfaces") or []
        if not isinstance(interfaces, list):
            raise ConfigFormatError("'interfaces' must be a list")
        return cls(
            interfaces=[Interface.from_dict(i) for i in interfaces],
            auto=list(data.get("auto") or []),
            hotplug=list(data.get("hotplug") or []),
        )


def compute_checksum(config: NetworkConfiguration) -> str:
    """SHA256 of the canonical JSON form of a configuration."""
    config_str = json.dumps(config.to_dict(), sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(config_str.encode()).hexdigest()


# --- Address helpers ---

IPInterface = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def parse_cidr(value: Any) -> Optional[IPInterface]:
    """Parse "addr/prefix". A bare address without a prefix is rejected."""
    if not isinstance(value, str) or "/" not in value:
        return None
    try:
        return ipaddress.ip_interface(value.strip())
    except ValueError:
        return None


def parse_ip(value: Any) -> Optional[IPAddress]:
    """Parse a bare IPv4/IPv6 address."""
    if not isinstance(value, str):
        return None
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None
