# -*- coding: utf-8 -*-
"""IPv4 and IPv6 network ranges"""

from __future__ import annotations

import ipaddress
from typing import Optional, Union

"""Copyright 2019-2025 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class InvalidAddressRange(ValueError):
    """Raised when an address or CIDR range cannot be parsed"""


class AddressRange(object):
    """
    An immutable CIDR range: a network address and a prefix length

    Host bits are cleared on construction, so ``192.0.2.10/24`` and
    ``192.0.2.0/24`` are the same range.
    """

    __slots__ = ("_network",)

    def __init__(self, network: IPNetwork):
        if not isinstance(network, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
            raise TypeError(f"Expected an IPv4Network or IPv6Network, not {network!r}")
        object.__setattr__(self, "_network", network)

    def __setattr__(self, name, value):
        raise AttributeError("AddressRange objects are immutable")

    @classmethod
    def from_address(
        cls,
        address: Union[str, IPAddress],
        prefix_length: Optional[int] = None,
    ) -> AddressRange:
        """
        Builds a range from a single address and an optional mask

        Args:
            address: An IPv4 or IPv6 address
            prefix_length (int): The mask to apply; the full width of the
                                 address family when omitted

        Returns:
            AddressRange: The range

        Raises:
            :exc:`checkspf.network.InvalidAddressRange`
        """
        try:
            address = ipaddress.ip_address(address)
        except ValueError:
            raise InvalidAddressRange(f"{address} is not a valid IP address")
        if prefix_length is None:
            prefix_length = address.max_prefixlen
        if not 0 <= prefix_length <= address.max_prefixlen:
            raise InvalidAddressRange(
                f"/{prefix_length} is not a valid prefix length for "
                f"IPv{address.version} address {address}"
            )
        return cls(ipaddress.ip_network((address, prefix_length), strict=False))

    @property
    def network(self) -> IPNetwork:
        return self._network

    @property
    def version(self) -> int:
        return self._network.version

    @property
    def network_address(self) -> bytes:
        return self._network.network_address.packed

    @property
    def prefix_length(self) -> int:
        return self._network.prefixlen

    @property
    def max_prefix_length(self) -> int:
        return self._network.max_prefixlen

    def overlaps(self, other: AddressRange) -> bool:
        """
        Checks if two ranges share any address

        Ranges of different address families never overlap. Otherwise the
        two ranges overlap when their network addresses agree on the bits
        covered by the shorter of the two prefixes, i.e. when one range
        contains the other.

        Args:
            other (AddressRange): Another range

        Returns:
            bool: True if the ranges overlap
        """
        if self.version != other.version:
            return False
        shift = self.max_prefix_length - min(self.prefix_length, other.prefix_length)
        this = int(self._network.network_address) >> shift
        that = int(other._network.network_address) >> shift
        return this == that

    def __eq__(self, other):
        if not isinstance(other, AddressRange):
            return NotImplemented
        return self._network == other._network

    def __hash__(self):
        return hash(self._network)

    def __str__(self):
        return self._network.with_prefixlen

    def __repr__(self):
        return f"AddressRange('{self}')"


def parse_cidr(text: str) -> AddressRange:
    """
    Parses an IPv4 or IPv6 address, with an optional ``/prefix`` length

    Args:
        text (str): An address such as ``192.0.2.1``, or a range such as
                    ``192.0.2.0/24`` or ``2001:db8::/32``

    Returns:
        AddressRange: The parsed range; a bare address covers only itself

    Raises:
        :exc:`checkspf.network.InvalidAddressRange`
    """
    if not isinstance(text, str):
        raise InvalidAddressRange(f"{text!r} is not a string")
    address, separator, prefix = text.strip().partition("/")
    prefix_length = None
    if separator:
        if not prefix.isdigit() or not prefix.isascii():
            raise InvalidAddressRange(f"{text} has an invalid prefix length")
        prefix_length = int(prefix)
    return AddressRange.from_address(address, prefix_length)


def overlaps(a: AddressRange, b: AddressRange) -> bool:
    """Checks if two ranges share any address"""
    return a.overlaps(b)
