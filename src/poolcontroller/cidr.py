"""Equal-size CIDR partitioning."""

from __future__ import annotations

import ipaddress
import math


class CIDRSplitError(ValueError):
    """Raised when a block cannot be split into the requested number of subnets."""

    pass


def _split(network: ipaddress.IPv4Network | ipaddress.IPv6Network, count: int) -> list:
    if count < 1:
        raise CIDRSplitError(f"cannot split {network} into {count} subnets")
    extra_bits = math.ceil(math.log2(count)) if count > 1 else 0
    new_prefix = network.prefixlen + extra_bits
    if new_prefix > network.max_prefixlen:
        raise CIDRSplitError(
            f"{network} is too small to be split into {count} subnets"
        )
    subnets = list(network.subnets(new_prefix=new_prefix)) if extra_bits else [network]
    return subnets[:count]


def split_into_subnets_ipv4(cidr_block: str, count: int) -> list[ipaddress.IPv4Network]:
    """Split an IPv4 block into count equal-size subnets.

    The prefix is lengthened by ceil(log2(count)) bits, so the blocks are
    the smallest power of two that fits; when count is not a power of two
    the tail of the parent block stays unallocated.

    Example:
        >>> split_into_subnets_ipv4("10.0.0.0/16", 4)
        [IPv4Network('10.0.0.0/18'), ..., IPv4Network('10.0.192.0/18')]
    """
    try:
        network = ipaddress.IPv4Network(cidr_block)
    except ValueError as e:
        raise CIDRSplitError(f"invalid IPv4 CIDR {cidr_block!r}: {e}") from e
    return _split(network, count)


def split_into_subnets_ipv6(cidr_block: str, count: int) -> list[ipaddress.IPv6Network]:
    """Allocate count consecutive /64 subnets following the block's own /64.

    EC2 numbers the /64 subnets of a VPC's /56 by the byte after the /56
    prefix. Allocation starts one past the first /64 of cidr_block, so
    passing the last /64 of a previous allocation continues the sequence
    without overlapping it.

    Example:
        >>> split_into_subnets_ipv6("2001:db8:0:ff00::/56", 2)
        [IPv6Network('2001:db8:0:ff01::/64'), IPv6Network('2001:db8:0:ff02::/64')]
    """
    try:
        network = ipaddress.IPv6Network(cidr_block, strict=False)
    except ValueError as e:
        raise CIDRSplitError(f"invalid IPv6 CIDR {cidr_block!r}: {e}") from e
    if network.prefixlen > 64:
        raise CIDRSplitError(f"{cidr_block} is smaller than a /64")
    if count < 1:
        raise CIDRSplitError(f"cannot split {network} into {count} subnets")

    enclosing = network if network.prefixlen <= 56 else network.supernet(new_prefix=56)
    first = int(network.network_address) >> 64

    subnets = []
    for i in range(1, count + 1):
        subnet = ipaddress.IPv6Network(((first + i) << 64, 64))
        if not subnet.subnet_of(enclosing):
            raise CIDRSplitError(
                f"{cidr_block} has no room for {count} more /64 subnets within {enclosing}"
            )
        subnets.append(subnet)
    return subnets
