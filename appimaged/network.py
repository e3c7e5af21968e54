"""Detection of whether this machine is connected to a network."""

from __future__ import annotations

import ipaddress
import logging
import socket

import psutil

log = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _parse(address) -> IPAddress | None:
    text = str(address).split("/", 1)[0].strip()
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _is_global_unicast(ip: ipaddress.IPv6Address) -> bool:
    return not (ip.is_unspecified or ip.is_loopback or ip.is_multicast or ip.is_link_local)


def addresses_for_interface(addrs) -> tuple[list[IPAddress], list[IPAddress]]:
    """Split the addresses of one interface into IPv4 and IPv6 addresses.

    Loopback and unparsable addresses are skipped. Link-local IPv6
    addresses are only returned when there is no global IPv6 address.
    """
    v4: list[IPAddress] = []
    v6: list[IPAddress] = []
    v6_local: list[IPAddress] = []
    for address in addrs:
        ip = _parse(address)
        if ip is None or ip.is_loopback:
            continue
        if isinstance(ip, ipaddress.IPv4Address):
            v4.append(ip)
        elif _is_global_unicast(ip):
            v6.append(ip)
        elif ip.is_link_local:
            v6_local.append(ip)
    return v4, v6 or v6_local


def check_if_connected_to_network() -> bool:
    """Return True if an interface that is up and multicast-capable has an address."""
    try:
        stats = psutil.net_if_stats()
        all_addresses = psutil.net_if_addrs()
    except (OSError, psutil.Error) as err:
        log.debug("network: %s", err)
        return False
    if not stats:
        return False

    found: list[IPAddress] = []
    for name, status in stats.items():
        if not status.isup:
            continue
        flags = getattr(status, "flags", None)
        if flags is not None and "multicast" not in str(flags).split(","):
            continue
        addresses = [
            entry.address
            for entry in all_addresses.get(name, ())
            if entry.family in (socket.AF_INET, socket.AF_INET6)
        ]
        v4, v6 = addresses_for_interface(addresses)
        found.extend(v4)
        found.extend(v6)
    return bool(found)