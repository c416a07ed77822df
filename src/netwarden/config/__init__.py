"""Configuration model and runtime settings."""
from .schema import (
    AddressMethod,
    BOND_MODES,
    Bond,
    Bridge,
    ConfigFormatError,
    Interface,
    InterfaceKind,
    Loopback,
    NetworkConfiguration,
    Physical,
    Vlan,
    Vxlan,
    compute_checksum,
    normalize_bond_mode,
    parse_cidr,
    parse_ip,
)
from .settings import Settings, load_settings

__all__ = [
    "AddressMethod",
    "BOND_MODES",
    "Bond",
    "Bridge",
    "ConfigFormatError",
    "Interface",
    "InterfaceKind",
    "Loopback",
    "NetworkConfiguration",
    "Physical",
    "Vlan",
    "Vxlan",
    "compute_checksum",
    "normalize_bond_mode",
    "parse_cidr",
    "parse_ip",
    "Settings",
    "load_settings",
]
