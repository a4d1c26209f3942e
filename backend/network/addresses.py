"""
Local address discovery.

Enumerates the IPv4 addresses bound to this machine, answers whether an
address belongs to us, and computes the directed broadcast address of
every attached subnet.
"""

import logging
import socket

import psutil

logger = logging.getLogger(__name__)

LOOPBACK_ADDRESS = "127.0.0.1"
LOOPBACK_ALIAS = "localhost"
ALWAYS_LOCAL = frozenset({LOOPBACK_ADDRESS, LOOPBACK_ALIAS})


def _parse_octets(value: str) -> list[int] | None:
    """Split a dotted-quad into four ints, or None if it is not one."""
    if not isinstance(value, str):
        return None
    parts = value.strip().split(".")
    if len(parts) != 4:
        return None
    octets = []
    for part in parts:
        if not part.isdigit():
            return None
        octet = int(part)
        if octet > 255:
            return None
        octets.append(octet)
    return octets


def subnet_broadcast_address(ip: str, netmask: str) -> str | None:
    """
    Compute the directed broadcast address for an interface.

    Each octet is ``(ip & mask) | (~mask & 0xFF)``. Returns None when
    either argument is malformed so the caller can skip that interface.
    """
    ip_octets = _parse_octets(ip)
    mask_octets = _parse_octets(netmask)
    if ip_octets is None or mask_octets is None:
        return None

    return ".".join(
        str((i & m) | (~m & 0xFF)) for i, m in zip(ip_octets, mask_octets)
    )


class AddressResolver:
    """Answers questions about this machine's IPv4 addresses.

    The interface table is re-read on every call, so an address that
    appears or disappears (Wi-Fi roaming, VPN up/down) is picked up
    without any invalidation step.
    """

    def _ipv4_interfaces(self) -> list[tuple[str, str, str | None]]:
        """Return (interface, address, netmask) for every IPv4 binding."""
        found = []
        try:
            table = psutil.net_if_addrs()
        except OSError as e:
            logger.warning(f"Could not enumerate network interfaces: {e}")
            return found

        for name, addrs in table.items():
            for addr in addrs:
                if addr.family == socket.AF_INET:
                    found.append((name, addr.address, addr.netmask))
        return found

    def list_local_addresses(self) -> set[str]:
        """All addresses that identify this machine, loopback included."""
        addresses = set(ALWAYS_LOCAL)
        addresses.update(ip for _, ip, _ in self._ipv4_interfaces())

        try:
            host_name = socket.gethostname()
            addresses.add(host_name)
            _, _, ips = socket.gethostbyname_ex(host_name)
            addresses.update(ips)
        except OSError as e:
            logger.debug(f"Error resolving local hostname: {e}")

        return addresses

    def is_local_address(self, address: str) -> bool:
        if address in ALWAYS_LOCAL:
            return True
        return address in self.list_local_addresses()

    def interface_broadcast_addresses(self) -> list[str]:
        """Subnet broadcast address of every non-loopback interface."""
        result = []
        for name, ip, netmask in self._ipv4_interfaces():
            if ip.startswith("127."):
                continue
            bcast = subnet_broadcast_address(ip, netmask)
            if bcast is None:
                logger.debug(f"Skipping interface {name}: no usable netmask for {ip}")
                continue
            if bcast not in result:
                result.append(bcast)
        return result

    def primary_address(self) -> str:
        """First non-loopback IPv4 address, or loopback if there is none."""
        for _, ip, _ in self._ipv4_interfaces():
            if not ip.startswith("127."):
                return ip
        return LOOPBACK_ADDRESS
