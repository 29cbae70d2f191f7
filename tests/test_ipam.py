"""Tests for IPAMService."""
import pytest

from meshplane.core.exceptions import (
    AddressStateError,
    AllocationExhausted,
    InvalidAddress,
    InvalidCidr,
)
from meshplane.database.models import AddressStatus


@pytest.fixture
def network(db_session, ipam):
    return ipam.create_network(db_session, "10.0.0.0/24", "office")


class TestNetworkArithmetic:
    """Pure address arithmetic."""

    def test_ipv4_total_addresses_excludes_network_and_broadcast(self, ipam):
        for prefix in range(1, 31):
            assert ipam.total_addresses(f"10.0.0.0/{prefix}") == 2 ** (32 - prefix) - 2

    def test_ipv6_total_addresses_counts_every_address(self, ipam):
        assert ipam.total_addresses("2001:db8::/120") == 256
        assert ipam.total_addresses("2001:db8::/64") == 2 ** 64

    def test_create_network_derives_fields(self, db_session, ipam):
        network = ipam.create_network(db_session, "10.1.2.77/24", "lab", gateway="10.1.2.1")

        assert network.cidr == "10.1.2.0/24"
        assert network.network_address == "10.1.2.0"
        assert network.prefix_length == 24
        assert network.ip_version == 4
        assert network.total_addresses == 254

    @pytest.mark.parametrize("cidr, total", [("2001:db8::/32", 2 ** 96), ("2001:db8:1::/64", 2 ** 64)])
    def test_ipv6_total_addresses_survive_storage(self, db_session, ipam, cidr, total):
        network_id = ipam.create_network(db_session, cidr, "v6").id
        db_session.expire_all()

        assert ipam.get_network(db_session, network_id).total_addresses == total

    def test_create_network_rejects_malformed_cidr(self, db_session, ipam):
        with pytest.raises(InvalidCidr):
            ipam.create_network(db_session, "10.0.0.300/24", "bad")

    def test_create_network_rejects_duplicate(self, db_session, ipam, network):
        with pytest.raises(InvalidCidr):
            ipam.create_network(db_session, "10.0.0.0/24", "again")

    def test_create_network_rejects_gateway_outside(self, db_session, ipam):
        with pytest.raises(InvalidAddress):
            ipam.create_network(db_session, "10.5.0.0/24", "x", gateway="10.6.0.1")

    def test_subnet_must_lie_within_parent(self, db_session, ipam, network):
        child = ipam.create_subnet(db_session, network, "10.0.0.128/25", "upper")
        assert child.parent_network_id == network.id

        with pytest.raises(InvalidCidr):
            ipam.create_subnet(db_session, network, "10.0.1.0/25", "elsewhere")

    def test_contains_ip(self, ipam, network):
        assert ipam.contains_ip(network, "10.0.0.15") is True
        assert ipam.contains_ip(network, "10.0.1.15") is False
        assert ipam.contains_ip(network, "2001:db8::1") is False

    def test_contains_ip_ipv6(self, ipam):
        assert ipam.contains_ip("2001:db8::/32", "2001:db8:ffff::1") is True
        assert ipam.contains_ip("2001:db8::/32", "2001:db9::1") is False

    def test_contains_ip_rejects_malformed(self, ipam, network):
        with pytest.raises(InvalidAddress):
            ipam.contains_ip(network, "10.0.0.999")

    def test_expand_ipv6_is_idempotent(self, ipam):
        once = ipam.expand_ipv6("2001:db8::1")
        assert once == "2001:0db8:0000:0000:0000:0000:0000:0001"
        assert ipam.expand_ipv6(once) == once

    def test_reverse_zone(self, ipam):
        assert ipam.reverse_zone("2001:db8::/32") == "8.b.d.0.1.0.0.2.ip6.arpa"
        assert ipam.reverse_zone("10.0.0.0/24") is None

    def test_ptr_label_is_host_part_reversed(self, ipam):
        label = ipam.ptr_label("2001:db8::/32", "2001:db8::1")
        assert label == "1." + "0." * 22 + "0"
        assert ipam.ptr_label("2001:db8::/32", "2001:db9::1") is None


class TestNextAvailable:
    """Next free address search."""

    def test_first_free_then_next(self, db_session, ipam, network):
        assert ipam.next_available_ip(db_session, network) == "10.0.0.1"

        ipam.allocate_next(db_session, network, hostname="web1")

        assert ipam.next_available_ip(db_session, network) == "10.0.0.2"

    def test_skips_non_available_statuses(self, db_session, ipam, network):
        ipam.add_address(db_session, network, "10.0.0.1", status=AddressStatus.GATEWAY.value)
        ipam.add_address(db_session, network, "10.0.0.2", status=AddressStatus.AVAILABLE.value)

        assert ipam.next_available_ip(db_session, network) == "10.0.0.2"

    def test_honours_exclusions(self, db_session, ipam, network):
        assert ipam.next_available_ip(db_session, network, exclude={"10.0.0.1", "10.0.0.2"}) == "10.0.0.3"

    def test_exhaustion(self, db_session, ipam):
        small = ipam.create_network(db_session, "10.9.0.0/30", "p2p")
        ipam.allocate_next(db_session, small)

        with pytest.raises(AllocationExhausted):
            ipam.next_available_ip(db_session, small)

    def test_ipv6_scan(self, db_session, ipam):
        v6 = ipam.create_network(db_session, "2001:db8::/64", "v6")
        assert ipam.next_available_ip(db_session, v6) == "2001:db8::1"


class TestAllocation:
    """Address allocate and release."""

    def test_allocate_sets_metadata(self, db_session, ipam, network):
        address = ipam.add_address(db_session, network, "10.0.0.20")
        address = ipam.allocate(db_session, address, hostname="db1", owner="ops")

        assert address.status == AddressStatus.ALLOCATED.value
        assert address.hostname == "db1"
        assert address.allocated_at is not None

    def test_double_allocation_fails_without_touching_metadata(self, db_session, ipam, network):
        address = ipam.add_address(db_session, network, "10.0.0.20")
        ipam.allocate(db_session, address, hostname="db1")

        with pytest.raises(AddressStateError):
            ipam.allocate(db_session, address, hostname="intruder")

        db_session.refresh(address)
        assert address.hostname == "db1"

    def test_release_clears_metadata(self, db_session, ipam, network):
        address = ipam.allocate_next(db_session, network, hostname="web1", service="web")
        address = ipam.release(db_session, address)

        assert address.status == AddressStatus.AVAILABLE.value
        assert address.hostname is None
        assert address.service is None
        assert address.allocated_at is None

    def test_release_of_available_address_fails(self, db_session, ipam, network):
        address = ipam.add_address(db_session, network, "10.0.0.30")
        with pytest.raises(AddressStateError):
            ipam.release(db_session, address)

    def test_released_address_is_reused(self, db_session, ipam, network):
        first = ipam.allocate_next(db_session, network)
        ipam.release(db_session, first)

        again = ipam.allocate_next(db_session, network)
        assert again.id == first.id
        assert again.ip_address == "10.0.0.1"

    def test_add_address_outside_network(self, db_session, ipam, network):
        with pytest.raises(InvalidAddress):
            ipam.add_address(db_session, network, "192.168.1.1")


class TestReservations:
    """Reservation bookkeeping."""

    def test_reservation_count_and_containment(self, db_session, ipam, network):
        reservation = ipam.create_reservation(db_session, network, "printers", "10.0.0.10", "10.0.0.20")

        assert reservation.address_count == 11
        assert ipam.reservation_contains(reservation, "10.0.0.15") is True
        assert ipam.reservation_contains(reservation, "10.0.0.21") is False

    def test_reservation_range_must_be_ordered_and_inside(self, db_session, ipam, network):
        with pytest.raises(InvalidAddress):
            ipam.create_reservation(db_session, network, "backwards", "10.0.0.20", "10.0.0.10")
        with pytest.raises(InvalidAddress):
            ipam.create_reservation(db_session, network, "outside", "10.0.0.250", "10.0.1.5")

    def test_update_recomputes_count(self, db_session, ipam, network):
        reservation = ipam.create_reservation(db_session, network, "r", "10.0.0.10", "10.0.0.20")
        reservation = ipam.update_reservation(db_session, reservation, end_ip="10.0.0.12", name="small")

        assert reservation.address_count == 3
        assert reservation.name == "small"

    def test_rejected_update_leaves_row_unchanged(self, db_session, ipam, network):
        reservation = ipam.create_reservation(db_session, network, "r", "10.0.0.10", "10.0.0.20")

        with pytest.raises(InvalidAddress):
            ipam.update_reservation(db_session, reservation, end_ip="10.0.0.12", bogus=1)
        db_session.commit()
        db_session.expire_all()

        assert reservation.end_ip == "10.0.0.20"
        assert reservation.address_count == 11

    def test_large_ipv6_reservation(self, db_session, ipam):
        v6 = ipam.create_network(db_session, "2001:db8::/48", "v6")
        reservation = ipam.create_reservation(db_session, v6, "pool", "2001:db8::", "2001:db8:0:ffff:ffff:ffff:ffff:ffff")
        db_session.expire_all()

        assert reservation.address_count == 2 ** 80
        assert ipam.get_network_stats(db_session, v6)["reserved"] == 2 ** 80

    def test_find_overlapping(self, db_session, ipam, network):
        a = ipam.create_reservation(db_session, network, "a", "10.0.0.10", "10.0.0.20")
        ipam.create_reservation(db_session, network, "b", "10.0.0.30", "10.0.0.40")

        overlaps = ipam.find_overlapping_reservations(db_session, network, "10.0.0.18", "10.0.0.25")
        assert [r.id for r in overlaps] == [a.id]
        assert ipam.find_overlapping_reservations(db_session, network, "10.0.0.21", "10.0.0.29") == []

    def test_utilization_counts_used_and_reserved(self, db_session, ipam, network):
        ipam.allocate_next(db_session, network)
        ipam.create_reservation(db_session, network, "r", "10.0.0.10", "10.0.0.20")

        assert ipam.utilization(db_session, network) == round(12 / 254 * 100, 2)

        stats = ipam.get_network_stats(db_session, network)
        assert stats["total"] == 254
        assert stats["used"] == 1
        assert stats["reserved"] == 11
        assert stats["available"] == 242
