#!/usr/bin/env python3
"""
Network provisioner for the nested container runtime.

This module hands the host's primary address over to a bridge so the
nested runtime's containers sit on the host's own network segment, and
derives the sub-range of that network they are allowed to use.

Subnet derivation works octet by octet:

    D[k] = N[k] + ((I[k] - N[k] + O[k]) & W[k])

where I is the host address, N the host network, O the administrator's
offset and W the host wildcard mask. There is no carry between octets, so
an offset that would overflow one octet wraps inside it instead of
incrementing the next. Deployments depend on the subnets this produces;
do not switch it to 32-bit addition.
"""

import ipaddress
import logging
import re
import subprocess
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from dind_bootstrap.errors import BootstrapError

logger = logging.getLogger(__name__)

Octets = Tuple[int, int, int, int]


class NetworkError(BootstrapError):
    """Raised when host networking cannot be read or rewritten."""
    pass


@dataclass
class DefaultRoute:
    """The host's default route, minus its output device."""
    gateway: Optional[str] = None
    device: Optional[str] = None

    def route_args(self, device: str) -> List[str]:
        args = ["default"]
        if self.gateway:
            args.extend(["via", self.gateway])
        args.extend(["dev", device])
        return args

    @classmethod
    def parse(cls, line: str) -> "DefaultRoute":
        tokens = line.split()
        route = cls()
        for i, token in enumerate(tokens[:-1]):
            if token == "via":
                route.gateway = tokens[i + 1]
            elif token == "dev":
                route.device = tokens[i + 1]
        return route


@dataclass
class NetworkConfig:
    """Derived network settings for the nested runtime."""
    host_cidr: str
    host_network: str
    bridge_name: str = "docker0"
    primary_interface: str = "eth0"
    default_route: DefaultRoute = field(default_factory=DefaultRoute)
    network_offset: str = "0.0.1.0"
    network_prefix: int = 24
    derived_subnet: str = ""

    @property
    def bridge_ip(self) -> str:
        """Address the bridge carries, in CIDR form."""
        return self.host_cidr


def to_octets(address) -> Octets:
    return tuple(ipaddress.IPv4Address(address).packed)


def from_octets(octets: Sequence[int]) -> ipaddress.IPv4Address:
    return ipaddress.IPv4Address(bytes(octets))


def wildcard_octets(prefixlen: int) -> Octets:
    """Inverse netmask for a prefix length, e.g. 24 -> (0, 0, 0, 255)."""
    return tuple(ipaddress.IPv4Network(f"0.0.0.0/{prefixlen}").hostmask.packed)


def derive_address(host: Octets, network: Octets, offset: Octets, wildcard: Octets) -> Octets:
    """Add the offset to the host part of an address, one octet at a time."""
    return tuple(
        n + ((i - n + o) & w)
        for i, n, o, w in zip(host, network, offset, wildcard)
    )


def derive_subnet(host_cidr: str, host_network: str, offset: str,
                  derived_prefix: int) -> ipaddress.IPv4Network:
    """
    Derive the nested container subnet from the host address.

    Args:
        host_cidr: Host address with prefix length, e.g. "10.0.0.5/16"
        host_network: Host network address, e.g. "10.0.0.0"
        offset: Four-octet offset, e.g. "0.0.1.0"
        derived_prefix: Prefix length of the derived subnet

    Returns:
        The derived subnet, normalized to its network address
    """
    interface = ipaddress.IPv4Interface(host_cidr)
    derived = derive_address(
        to_octets(interface.ip),
        to_octets(host_network),
        to_octets(offset),
        wildcard_octets(interface.network.prefixlen),
    )
    return ipaddress.IPv4Network(f"{from_octets(derived)}/{derived_prefix}", strict=False)


class NetworkManager:
    """Moves the host address onto a bridge and derives the container subnet."""

    INET_PATTERN = re.compile(r"\binet\s+(\d+\.\d+\.\d+\.\d+/\d+)")

    def __init__(self, bridge_name: str = "docker0", primary_interface: str = "eth0",
                 network_offset: str = "0.0.1.0", network_prefix: int = 24):
        """
        Initialize network manager.

        Args:
            bridge_name: Bridge device handed to the nested runtime
            primary_interface: Interface currently carrying the host address
            network_offset: Offset added to the host address
            network_prefix: Prefix length of the derived subnet
        """
        self.bridge_name = bridge_name
        self.primary_interface = primary_interface
        self.network_offset = network_offset
        self.network_prefix = network_prefix

    @classmethod
    def from_config(cls, config) -> "NetworkManager":
        return cls(
            bridge_name=config.bridge_name,
            primary_interface=config.primary_interface,
            network_offset=config.network_offset,
            network_prefix=config.network_prefix,
        )

    def _ip(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = ["ip", *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.run(cmd, capture_output=True, text=True, check=check)
        except subprocess.CalledProcessError as e:
            raise NetworkError(f"'{' '.join(cmd)}' failed: {(e.stderr or '').strip()}")
        except OSError as e:
            raise NetworkError(f"Cannot run ip: {e}")

    def bridge_exists(self) -> bool:
        return self._ip("link", "show", self.bridge_name, check=False).returncode == 0

    def create_bridge(self) -> bool:
        """
        Create the bridge, enslave the primary interface and bring it up.

        Returns:
            True if the bridge was created, False if it already existed
        """
        created = False
        if self.bridge_exists():
            logger.info(f"Bridge {self.bridge_name} already exists")
        else:
            self._ip("link", "add", "name", self.bridge_name, "type", "bridge")
            logger.info(f"Created bridge interface: {self.bridge_name}")
            created = True

        self._ip("link", "set", self.primary_interface, "master", self.bridge_name)
        self._ip("link", "set", self.bridge_name, "up")
        logger.info(f"Attached {self.primary_interface} to {self.bridge_name} and brought it up")
        return created

    def read_interface_address(self, device: str) -> Optional[str]:
        """
        Read the first IPv4 address of a device.

        Returns:
            Address in CIDR form, or None if the device has no inet line
        """
        result = self._ip("-o", "-4", "addr", "show", "dev", device)
        match = self.INET_PATTERN.search(result.stdout)
        if not match:
            return None
        try:
            ipaddress.IPv4Interface(match.group(1))
        except ValueError:
            return None
        return match.group(1)

    def read_default_route(self) -> Optional[DefaultRoute]:
        result = self._ip("-4", "route", "show", "default")
        for line in result.stdout.splitlines():
            if line.startswith("default"):
                return DefaultRoute.parse(line)
        return None

    def read_bridge_network(self, host_cidr: str) -> str:
        """
        Read the host network address from the bridge's routing entries.

        Falls back to the network implied by host_cidr when the routing
        table has no connected route for the bridge.
        """
        result = self._ip("-4", "route", "show", "dev", self.bridge_name)
        for line in result.stdout.splitlines():
            tokens = line.split()
            if not tokens or tokens[0] == "default":
                continue
            try:
                return str(ipaddress.IPv4Network(tokens[0], strict=False).network_address)
            except ValueError:
                continue

        network = ipaddress.IPv4Interface(host_cidr).network.network_address
        logger.warning(f"No connected route on {self.bridge_name}, assuming network {network}")
        return str(network)

    def take_over_address(self, host_cidr: str, route: DefaultRoute) -> None:
        """Move host_cidr and the default route from the primary interface to the bridge."""
        self._ip("addr", "del", host_cidr, "dev", self.primary_interface)
        self._ip("addr", "add", host_cidr, "dev", self.bridge_name)
        self._ip("route", "replace", *route.route_args(self.bridge_name))
        logger.info(f"Moved {host_cidr} and default route from {self.primary_interface} to {self.bridge_name}")

    def provision(self) -> NetworkConfig:
        """
        Rewire host networking and derive the nested container subnet.

        Returns:
            NetworkConfig with bridge address and derived subnet

        Raises:
            NetworkError: If the host address or default route is missing
        """
        logger.info("Provisioning bridge network...")
        self.create_bridge()

        host_cidr = self.read_interface_address(self.primary_interface)
        takeover = host_cidr is not None
        if not takeover:
            # A previous run already moved the address
            host_cidr = self.read_interface_address(self.bridge_name)
            if host_cidr is None:
                raise NetworkError(
                    f"Cannot determine address of {self.primary_interface}: no valid inet line"
                )
            logger.info(f"{self.bridge_name} already carries {host_cidr}")

        route = self.read_default_route()
        if route is None:
            raise NetworkError("No default route found to move onto the bridge")

        if takeover:
            self.take_over_address(host_cidr, route)

        host_network = self.read_bridge_network(host_cidr)
        subnet = derive_subnet(host_cidr, host_network, self.network_offset, self.network_prefix)

        host_net = ipaddress.IPv4Interface(host_cidr).network
        if subnet == host_net:
            logger.warning(
                f"Derived subnet {subnet} covers the whole host network; "
                f"use a longer DOCKER_NETWORK_PREFIX to keep instances apart"
            )
        elif not subnet.subnet_of(host_net):
            logger.warning(f"Derived subnet {subnet} lies outside host network {host_net}")

        config = NetworkConfig(
            host_cidr=host_cidr,
            host_network=host_network,
            bridge_name=self.bridge_name,
            primary_interface=self.primary_interface,
            default_route=route,
            network_offset=self.network_offset,
            network_prefix=self.network_prefix,
            derived_subnet=str(subnet),
        )
        logger.info(f"Bridge {self.bridge_name} at {config.bridge_ip}, container subnet {config.derived_subnet}")
        return config


def main(argv: Optional[List[str]] = None):
    """Main function for command-line usage."""
    import argparse

    parser = argparse.ArgumentParser(description="Bridge network provisioner for nested Docker")
    parser.add_argument("--bridge", default="docker0", help="Bridge device name")
    parser.add_argument("--interface", default="eth0", help="Primary network interface")
    parser.add_argument("--offset", default="0.0.1.0", help="Network offset")
    parser.add_argument("--prefix", type=int, default=24, help="Derived subnet prefix length")
    parser.add_argument("--derive", metavar="HOST_CIDR",
                        help="Only print the subnet derived for HOST_CIDR")

    args = parser.parse_args(argv)

    if args.derive:
        try:
            network = ipaddress.IPv4Interface(args.derive).network.network_address
            print(derive_subnet(args.derive, str(network), args.offset, args.prefix))
        except ValueError as e:
            print(f"Invalid input: {e}")
            return 1
        return 0

    manager = NetworkManager(args.bridge, args.interface, args.offset, args.prefix)
    try:
        config = manager.provision()
    except NetworkError as e:
        logger.error(str(e))
        return 1

    print(f"Bridge IP: {config.bridge_ip}")
    print(f"Container subnet: {config.derived_subnet}")
    return 0


if __name__ == "__main__":
    exit(main())
