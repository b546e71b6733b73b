"""Tests for CIDR partitioning."""

import ipaddress

import pytest

from poolcontroller.cidr import CIDRSplitError, split_into_subnets_ipv4, split_into_subnets_ipv6


class TestSplitIPv4:
    """Tests for IPv4 splitting."""

    def test_power_of_two(self) -> None:
        """Test splitting into four quarters."""
        subnets = split_into_subnets_ipv4("10.0.0.0/16", 4)

        assert [str(s) for s in subnets] == [
            "10.0.0.0/18",
            "10.0.64.0/18",
            "10.0.128.0/18",
            "10.0.192.0/18",
        ]

    def test_not_power_of_two(self) -> None:
        """Test that three subnets use /18 blocks and leave the tail free."""
        subnets = split_into_subnets_ipv4("10.0.0.0/16", 3)

        assert [str(s) for s in subnets] == ["10.0.0.0/18", "10.0.64.0/18", "10.0.128.0/18"]

    def test_single(self) -> None:
        """Test that one subnet is the block itself."""
        assert [str(s) for s in split_into_subnets_ipv4("10.1.0.0/24", 1)] == ["10.1.0.0/24"]

    def test_subnets_do_not_overlap(self) -> None:
        """Test that results are disjoint and inside the parent."""
        parent = ipaddress.IPv4Network("172.16.0.0/20")
        subnets = split_into_subnets_ipv4(str(parent), 7)

        assert len(subnets) == 7
        for i, a in enumerate(subnets):
            assert a.subnet_of(parent)
            for b in subnets[i + 1 :]:
                assert not a.overlaps(b)

    def test_too_small(self) -> None:
        """Test that a block too small for the count is rejected."""
        with pytest.raises(CIDRSplitError):
            split_into_subnets_ipv4("10.0.0.0/31", 4)

    def test_invalid_cidr(self) -> None:
        """Test that a malformed CIDR is rejected."""
        with pytest.raises(CIDRSplitError):
            split_into_subnets_ipv4("10.0.0.300/16", 2)

    def test_zero_count(self) -> None:
        """Test that a zero count is rejected."""
        with pytest.raises(CIDRSplitError):
            split_into_subnets_ipv4("10.0.0.0/16", 0)


class TestSplitIPv6:
    """Tests for IPv6 /64 allocation."""

    def test_consecutive_64s_after_block(self) -> None:
        """Test allocation starts one past the block's first /64."""
        subnets = split_into_subnets_ipv6("2001:db8:0:ff00::/56", 2)

        assert [str(s) for s in subnets] == ["2001:db8:0:ff01::/64", "2001:db8:0:ff02::/64"]

    def test_continue_from_last_allocation(self) -> None:
        """Test passing a /64 continues the sequence after it."""
        first = split_into_subnets_ipv6("2001:db8:0:1200::/56", 3)
        more = split_into_subnets_ipv6(str(first[-1]), 2)

        assert [str(s) for s in more] == ["2001:db8:0:1204::/64", "2001:db8:0:1205::/64"]
        assert not set(first) & set(more)

    def test_overflow_of_enclosing_56(self) -> None:
        """Test that running past the /56 is an error."""
        with pytest.raises(CIDRSplitError):
            split_into_subnets_ipv6("2001:db8:0:12fe::/64", 2)

    def test_rejects_smaller_than_64(self) -> None:
        """Test that prefixes longer than /64 are rejected."""
        with pytest.raises(CIDRSplitError):
            split_into_subnets_ipv6("2001:db8::/80", 1)
