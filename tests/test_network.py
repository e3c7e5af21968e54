import socket
from collections import namedtuple
from ipaddress import ip_address
from unittest import mock

from appimaged.network import addresses_for_interface, check_if_connected_to_network

Stats = namedtuple("Stats", "isup flags")
Addr = namedtuple("Addr", "family address")


def test_loopback_is_skipped():
    v4, v6 = addresses_for_interface(["127.0.0.1", "::1"])
    assert v4 == []
    assert v6 == []


def test_ipv4_and_global_ipv6_are_split():
    v4, v6 = addresses_for_interface(
        ["127.0.0.1", "192.168.1.5/24", "fe80::1", "2001:db8::1"]
    )
    assert v4 == [ip_address("192.168.1.5")]
    assert v6 == [ip_address("2001:db8::1")]


def test_link_local_used_when_no_global_ipv6():
    v4, v6 = addresses_for_interface(["fe80::1"])
    assert v4 == []
    assert v6 == [ip_address("fe80::1")]


def test_invalid_addresses_are_ignored():
    v4, v6 = addresses_for_interface(["not-an-address", "10.0.0.1"])
    assert v4 == [ip_address("10.0.0.1")]
    assert v6 == []


def test_ipv4_mapped_counts_as_ipv4():
    v4, _ = addresses_for_interface(["::ffff:10.0.0.2"])
    assert v4 == [ip_address("10.0.0.2")]


def _patched(stats, addrs):
    return (
        mock.patch("psutil.net_if_stats", return_value=stats),
        mock.patch("psutil.net_if_addrs", return_value=addrs),
    )


def test_connected_with_up_multicast_interface():
    stats = {"eth0": Stats(True, "up,broadcast,running,multicast")}
    addrs = {"eth0": [Addr(socket.AF_INET, "10.1.2.3")]}
    first, second = _patched(stats, addrs)
    with first, second:
        assert check_if_connected_to_network() is True


def test_not_connected_when_interface_down():
    stats = {"eth0": Stats(False, "broadcast,multicast")}
    addrs = {"eth0": [Addr(socket.AF_INET, "10.1.2.3")]}
    first, second = _patched(stats, addrs)
    with first, second:
        assert check_if_connected_to_network() is False


def test_not_connected_without_multicast():
    stats = {"eth0": Stats(True, "up,running")}
    addrs = {"eth0": [Addr(socket.AF_INET, "10.1.2.3")]}
    first, second = _patched(stats, addrs)
    with first, second:
        assert check_if_connected_to_network() is False


def test_not_connected_with_only_loopback_addresses():
    stats = {"lo": Stats(True, "up,loopback,running,multicast")}
    addrs = {"lo": [Addr(socket.AF_INET, "127.0.0.1"), Addr(socket.AF_INET6, "::1")]}
    first, second = _patched(stats, addrs)
    with first, second:
        assert check_if_connected_to_network() is False


def test_not_connected_without_interfaces():
    first, second = _patched({}, {})
    with first, second:
        assert check_if_connected_to_network() is False