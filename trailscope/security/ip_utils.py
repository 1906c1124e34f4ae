"""IP address range keys.

A range key is a fixed-width, upper-case hexadecimal rendering of an
address so that plain string comparison orders addresses numerically:

* IPv4 -> 8 hex digits, e.g. ``10.0.0.1`` -> ``0A000001``
* IPv6 -> ``v6-`` + 32 hex digits

Every IPv4 key sorts before every IPv6 key (``'0'..'F' < 'v'``), so a
range predicate ``key >= start AND key <= end`` never mixes families.
"""
from __future__ import annotations

import ipaddress
import string
from typing import Optional, Tuple, Union

from trailscope.errors import InvalidAddress

IPV6_KEY_PREFIX = "v6-"
IPV4_KEY_WIDTH = 8
IPV6_KEY_WIDTH = 32

_Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
_Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def _address(value: str) -> _Address:
    if not isinstance(value, str):
        raise InvalidAddress(repr(value))
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        raise InvalidAddress(value) from None


def _network(value: str) -> _Network:
    if not isinstance(value, str) or "/" not in value:
        raise InvalidAddress(repr(value))
    try:
        return ipaddress.ip_network(value.strip(), strict=False)
    except ValueError:
        raise InvalidAddress(value) from None


def _key(addr: _Address) -> str:
    if addr.version == 4:
        return f"{int(addr):0{IPV4_KEY_WIDTH}X}"
    return f"{IPV6_KEY_PREFIX}{int(addr):0{IPV6_KEY_WIDTH}X}"


def to_hex(address: str) -> str:
    """Range key for a single address."""
    return _key(_address(address))


def parse_range(target: str) -> Tuple[str, str]:
    """(start, end) range keys for a CIDR range or single address, both inclusive."""
    if "/" not in target:
        key = to_hex(target)
        return key, key
    net = _network(target)
    return _key(net.network_address), _key(net.broadcast_address)


def from_hex(key: str) -> str:
    """Inverse of :func:`to_hex`; returns the canonical address text."""
    if not isinstance(key, str):
        raise InvalidAddress(repr(key))
    if key.startswith(IPV6_KEY_PREFIX):
        digits, width, cls = key[len(IPV6_KEY_PREFIX):], IPV6_KEY_WIDTH, ipaddress.IPv6Address
    else:
        digits, width, cls = key, IPV4_KEY_WIDTH, ipaddress.IPv4Address
    if len(digits) != width or not all(c in string.hexdigits for c in digits):
        raise InvalidAddress(key)
    try:
        return str(cls(int(digits, 16)))
    except ValueError:
        raise InvalidAddress(key) from None


def is_valid_ip(value: str) -> bool:
    try:
        _address(value)
    except InvalidAddress:
        return False
    return True


def is_valid_range(value: str) -> bool:
    try:
        _network(value)
    except InvalidAddress:
        return False
    return True


def is_ipv4(value: str) -> bool:
    return ip_version(value) == 4


def is_ipv6(value: str) -> bool:
    return ip_version(value) == 6


def is_ip_address(value: str) -> bool:
    """True for a single address or a CIDR range."""
    return is_valid_ip(value) or is_valid_range(value)


def ip_version(value: str) -> Optional[int]:
    """4 or 6 for an address or range, None if it is neither."""
    try:
        if "/" in value:
            return _network(value).version
        return _address(value).version
    except InvalidAddress:
        return None


def prefix_length(value: str) -> int:
    """Prefix length of a CIDR range, or the full width for a single address."""
    if "/" in value:
        return _network(value).prefixlen
    return _address(value).max_prefixlen


def sanitize_ip(value: Optional[str]) -> Optional[str]:
    """Canonical text for an address, None for anything else."""
    if not value:
        return None
    try:
        return str(_address(value))
    except InvalidAddress:
        return None


def is_in_range(ip: str, range_or_ip: str) -> bool:
    try:
        key = to_hex(ip)
        start, end = parse_range(range_or_ip)
    except InvalidAddress:
        return False
    return start <= key <= end

