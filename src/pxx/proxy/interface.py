"""
Host network interface discovery.

Interface selectors name a network (e.g. the Tailscale mesh VPN) rather than
an address. They are looked up against the host's interfaces each time they
are resolved because the interface may only come up after pxx started.
"""

import ipaddress
import socket

import psutil

from pxx.proxy.exceptions import InterfaceNotFound
from pxx.utils.logger import get_logger

logger = get_logger(__name__)

# Selector -> address ranges, in order of preference
INTERFACE_SELECTORS: dict[
    str, tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...]
] = {
    "tailscale": (
        ipaddress.ip_network("100.64.0.0/10"),
        ipaddress.ip_network("fd7a:115c:a1e0::/48"),
    ),
}


def is_interface_selector(name: str) -> bool:
    return name.lower() in INTERFACE_SELECTORS


def find_interface_address(selector: str) -> str:
    """
    Find the address of the interface matching a selector.

    Args:
        selector: Key of INTERFACE_SELECTORS.

    Returns:
        The address as a string, IPv4 preferred over IPv6.

    Raises:
        InterfaceNotFound: No interface currently carries a matching address.
    """
    networks = INTERFACE_SELECTORS.get(selector.lower())
    if not networks:
        raise InterfaceNotFound(selector)

    candidates: list[ipaddress.IPv4Address | ipaddress.IPv6Address] = []
    for nic, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            try:
                ip = ipaddress.ip_address(addr.address.split("%", 1)[0])
            except ValueError:
                continue
            if any(ip in network for network in networks):
                logger.trace(f"Interface {nic} matches `{selector}`: {ip}")
                candidates.append(ip)

    for network in networks:
        for ip in candidates:
            if ip in network:
                return str(ip)

    raise InterfaceNotFound(selector)
