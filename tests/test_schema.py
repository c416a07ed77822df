"""Tests for the configuration model."""
import pytest

from netwarden.config import (
    AddressMethod,
    Bond,
    Bridge,
    ConfigFormatError,
    Interface,
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


class TestInterfaceKinds:
    """Tests for kind dependencies."""

    def test_bridge_depends_on_ports(self):
        assert Bridge(ports=["eth0", "eth1"]).dependencies() == [("eth0", "ports"), ("eth1", "ports")]

    def test_bond_depends_on_slaves(self):
        assert Bond(slaves=["eth0"]).dependencies() == [("eth0", "slaves")]

    def test_vlan_depends_on_parent(self):
        assert Vlan(parent="vmbr0", tag=10).dependencies() == [("vmbr0", "parent")]

    def test_malformed_members_have_no_dependencies(self):
        """Garbage is left for the validator, not raised here."""
        assert Bridge(ports="eth0").dependencies() == []
        assert Vlan(parent=None, tag=10).dependencies() == []

    def test_leaf_kinds(self):
        assert Physical().dependencies() == []
        assert Loopback().dependencies() == []
        assert Vxlan(vni=100, peers=["10.0.0.2"]).dependencies() == []


class TestInterfaceSerialization:
    """Tests for to_dict / from_dict."""

    def test_to_dict_tags_kind(self):
        iface = Interface(
            "bond0",
            kind=Bond(slaves=["eth0", "eth1"], mode="802.3ad"),
            method=AddressMethod.MANUAL,
            mtu=9000,
        )
        data = iface.to_dict()

        assert data["kind"] == {"type": "bond", "slaves": ["eth0", "eth1"], "mode": "802.3ad"}
        assert data["method"] == "manual"
        assert data["mtu"] == 9000

    def test_from_dict_restores_interface(self):
        original = Interface(
            "vxlan100",
            kind=Vxlan(vni=100, multicast_group="239.1.1.1", dstport=4789),
            method=AddressMethod.STATIC,
            addresses=["10.10.0.1/24"],
            options={"hwaddress": "aa:bb:cc:dd:ee:ff"},
            comment="overlay",
        )
        assert Interface.from_dict(original.to_dict()) == original

    def test_from_dict_keeps_unknown_method(self):
        """Unknown methods survive so the validator can report them."""
        iface = Interface.from_dict({"name": "eth0", "method": "ppp"})
        assert iface.method == "ppp"

    def test_from_dict_defaults_to_physical(self):
        iface = Interface.from_dict({"name": "eth0"})
        assert isinstance(iface.kind, Physical)
        assert iface.method == AddressMethod.MANUAL

    def test_from_dict_unknown_kind_raises(self):
        with pytest.raises(ConfigFormatError, match="Unknown interface type"):
            Interface.from_dict({"name": "tun0", "kind": {"type": "tunnel"}})

    def test_from_dict_bad_kind_fields_raise(self):
        with pytest.raises(ConfigFormatError, match="Bad vlan settings"):
            Interface.from_dict({"name": "eth0.10", "kind": {"type": "vlan", "vid": 10}})

    def test_from_dict_requires_name(self):
        with pytest.raises(ConfigFormatError):
            Interface.from_dict({"kind": {"type": "physical"}})


class TestNetworkConfiguration:
    """Tests for the configuration container."""

    def test_get_returns_first_occurrence(self):
        first = Interface("eth0", mtu=1500)
        second = Interface("eth0", mtu=9000)
        config = NetworkConfiguration(interfaces=[first, second])

        assert config.get("eth0") is first
        assert config.get("eth9") is None
        assert "eth0" in config
        assert "eth9" not in config

    def test_from_dict_none_is_empty(self):
        assert NetworkConfiguration.from_dict(None) == NetworkConfiguration()

    def test_from_dict_rejects_non_list(self):
        with pytest.raises(ConfigFormatError, match="must be a list"):
            NetworkConfiguration.from_dict({"interfaces": {"eth0": {}}})

    def test_checksum_changes_with_content(self, prior_config):
        same = NetworkConfiguration.from_dict(prior_config.to_dict())
        changed = NetworkConfiguration.from_dict(prior_config.to_dict())
        changed.auto.remove("eth0")

        assert compute_checksum(prior_config) == compute_checksum(same)
        assert compute_checksum(prior_config) != compute_checksum(changed)
        assert compute_checksum(prior_config).startswith("sha256:")


class TestHelpers:
    """Tests for address and bond mode helpers."""

    def test_parse_cidr_requires_prefix(self):
        assert parse_cidr("192.168.1.10/24") is not None
        assert parse_cidr("192.168.1.10") is None
        assert parse_cidr("192.168.1.300/24") is None
        assert parse_cidr(None) is None

    def test_parse_cidr_ipv6(self):
        assert parse_cidr("2001:db8::1/64").version == 6

    def test_parse_ip(self):
        assert parse_ip("10.0.0.1") is not None
        assert parse_ip("10.0.0.1/24") is None

    @pytest.mark.parametrize("mode,expected", [
        ("802.3ad", "802.3ad"),
        ("4", "802.3ad"),
        (1, "active-backup"),
        ("Balance-RR", "balance-rr"),
        ("lacp", None),
        (None, None),
    ])
    def test_normalize_bond_mode(self, mode, expected):
        assert normalize_bond_mode(mode) == expected
