import copy
import dataclasses
import ipaddress

import pytest

from seesaw.ipvs import (
    AF_INET,
    AF_INET6,
    Destination,
    DestinationFlags,
    DestinationStats,
    IPProto,
    IPVSDestination,
    IPVSService,
    IPVSVersion,
    Service,
    ServiceFlags,
    ServiceStats,
    Stats,
    new_ipvs_destination,
    new_ipvs_service,
)

TEST_STATS = Stats(
    connections=1234,
    packets_in=100000,
    packets_out=200000,
    bytes_in=300000,
    bytes_out=400000,
    cps=10,
    pps_in=100,
    pps_out=200,
    bps_in=300,
    bps_out=400,
)


def _service_stats():
    return ServiceStats(**dataclasses.asdict(TEST_STATS))


def _destination_stats(**extra):
    return DestinationStats(**dataclasses.asdict(TEST_STATS), **extra)


IPVS_SERVICE_TESTS = [
    (
        "Zeroed structs",
        {},
        {"address": "::", "statistics": ServiceStats()},
    ),
    (
        "IPv4 1.2.3.4 with TCP/80 using wlc",
        {"protocol": 6, "port": 80, "scheduler": "wlc", "netmask": 0xFFFFFFFF,
         "stats": _service_stats(), "addr_family": AF_INET, "address": "1.2.3.4"},
        {"address": "1.2.3.4", "protocol": 6, "port": 80, "scheduler": "wlc",
         "statistics": _service_stats()},
    ),
    (
        "IPv6 2012::beef with UDP/33434 using wlc",
        {"protocol": 17, "port": 33434, "scheduler": "wlc", "flags": 1234, "timeout": 100,
         "netmask": 128, "stats": _service_stats(), "addr_family": AF_INET6,
         "address": "2012::beef"},
        {"address": "2012::beef", "protocol": 17, "port": 33434, "scheduler": "wlc",
         "flags": 1234, "timeout": 100, "statistics": _service_stats()},
    ),
    (
        "IPv4 FWM 4 using lc",
        {"firewall_mark": 4, "scheduler": "lc", "netmask": 0xFFFFFFFF,
         "stats": _service_stats(), "addr_family": AF_INET},
        {"address": "0.0.0.0", "firewall_mark": 4, "scheduler": "lc",
         "statistics": _service_stats()},
    ),
    (
        "IPv6 FWM 6 using wrr",
        {"firewall_mark": 6, "scheduler": "wrr", "netmask": 0xFFFFFFFF,
         "stats": _service_stats(), "addr_family": AF_INET6},
        {"address": "::", "firewall_mark": 6, "scheduler": "wrr",
         "statistics": _service_stats()},
    ),
]


@pytest.mark.parametrize("desc,fields,want", IPVS_SERVICE_TESTS,
                         ids=[t[0] for t in IPVS_SERVICE_TESTS])
def test_ipvs_service_to_service(desc, fields, want):
    got = IPVSService(**copy.deepcopy(fields)).to_service()
    assert got == Service(**copy.deepcopy(want))


IPVS_DESTINATION_TESTS = [
    (
        "Zeroed structs",
        {},
        {"statistics": DestinationStats()},
    ),
    (
        "IPv4 1.2.4.4 with port 54321",
        {"port": 54321, "weight": 1, "upper_threshold": 100000, "lower_threshold": 10000,
         "active_conns": 12345678, "inactive_conns": 87654321, "persist_conns": 1234,
         "stats": _destination_stats(), "address": "1.2.3.4"},
        {"address": "1.2.3.4", "port": 54321, "weight": 1, "lower_threshold": 10000,
         "upper_threshold": 100000,
         "statistics": _destination_stats(active_conns=12345678, inactive_conns=87654321,
                                          persist_conns=1234)},
    ),
    (
        "IPv6 2002::cafe with port 53",
        {"port": 53, "flags": 0xF0F0F0F0, "weight": 1, "active_conns": 12345678,
         "inactive_conns": 87654321, "persist_conns": 1234,
         "stats": _destination_stats(), "address": "2002::cafe"},
        {"address": "2002::cafe", "port": 53, "weight": 1, "flags": 0xF0F0F0F0,
         "statistics": _destination_stats(active_conns=12345678, inactive_conns=87654321,
                                          persist_conns=1234)},
    ),
]


@pytest.mark.parametrize("desc,fields,want", IPVS_DESTINATION_TESTS,
                         ids=[t[0] for t in IPVS_DESTINATION_TESTS])
def test_ipvs_destination_to_destination(desc, fields, want):
    got = IPVSDestination(**copy.deepcopy(fields)).to_destination()
    assert got == Destination(**copy.deepcopy(want))


SERVICE_TESTS = [
    (
        "Zeroed structs",
        {},
        {"addr_family": AF_INET6, "netmask": 128},
    ),
    (
        "IPv4 1.2.3.4 with TCP/54321 using wlc",
        {"address": "1.2.3.4", "protocol": 6, "port": 54321, "firewall_mark": 1,
         "scheduler": "wlc", "timeout": 100000},
        {"protocol": 6, "port": 54321, "firewall_mark": 1, "scheduler": "wlc",
         "timeout": 100000, "netmask": 0xFFFFFFFF, "addr_family": AF_INET,
         "address": "1.2.3.4"},
    ),
    (
        "IPv6 2002::cafe with UDP/53",
        {"address": "2002::cafe", "protocol": 17, "port": 53,
         "scheduler": "xxxxxxxxxxxxxxxx", "flags": 0xF0F0F0F0},
        {"protocol": 17, "port": 53, "scheduler": "xxxxxxxxxxxxxxxx",
         "flags": 0xF0F0F0F0, "netmask": 128, "addr_family": AF_INET6,
         "address": "2002::cafe"},
    ),
]


@pytest.mark.parametrize("desc,fields,want", SERVICE_TESTS, ids=[t[0] for t in SERVICE_TESTS])
def test_service_to_ipvs_service(desc, fields, want):
    assert new_ipvs_service(Service(**fields)) == IPVSService(**want)


DESTINATION_TESTS = [
    ("Zeroed structs", {}, {}),
    (
        "IPv4 1.2.4.4 with port 54321",
        {"address": "1.2.3.4", "port": 54321, "weight": 2, "lower_threshold": 10000,
         "upper_threshold": 100000},
        {"port": 54321, "weight": 2, "upper_threshold": 100000, "lower_threshold": 10000,
         "address": "1.2.3.4"},
    ),
    (
        "IPv6 2002::cafe with port 53",
        {"address": "2002::cafe", "port": 53, "weight": 3, "flags": 0xF0F0F0F0},
        {"port": 53, "flags": 0xF0F0F0F0, "weight": 3, "address": "2002::cafe"},
    ),
]


@pytest.mark.parametrize("desc,fields,want", DESTINATION_TESTS,
                         ids=[t[0] for t in DESTINATION_TESTS])
def test_destination_to_ipvs_destination(desc, fields, want):
    assert new_ipvs_destination(Destination(**fields)) == IPVSDestination(**want)


def test_negative_weight_round_trips_through_kernel_form():
    ipvs_dst = new_ipvs_destination(Destination(address="10.0.0.1", weight=-1))
    assert ipvs_dst.weight == 0xFFFFFFFF
    assert ipvs_dst.to_destination().weight == -1


def test_to_service_copies_statistics():
    stats = _service_stats()
    svc = IPVSService(addr_family=AF_INET, address="1.2.3.4", stats=stats).to_service()
    svc.statistics.connections = 1
    assert stats.connections == 1234


def test_ipv4_mapped_address_is_treated_as_ipv4():
    svc = new_ipvs_service(Service(address="::ffff:1.2.3.4"))
    assert svc.addr_family == AF_INET
    assert svc.address == ipaddress.IPv4Address("1.2.3.4")


@pytest.mark.parametrize("value,text", [(6, "TCP"), (17, "UDP"), (0, "IP(0)"), (132, "IP(132)")])
def test_ip_proto_str(value, text):
    assert str(IPProto(value)) == text


@pytest.mark.parametrize("value,text", [
    (0x010203, "1.2.3"),
    (0x00010700, "1.7.0"),
    (0x7F0102FF, "1.2.255"),
])
def test_ipvs_version_from_int(value, text):
    assert str(IPVSVersion.from_int(value)) == text


def test_ipvs_version_fields():
    assert IPVSVersion.from_int(0x010203) == IPVSVersion(1, 2, 3)


@pytest.mark.parametrize("flags", [0, 1, 0x1F, 1234, 0xF1F2F3F4])
def test_service_flags_bytes_round_trip(flags):
    data = ServiceFlags(flags).to_bytes()
    assert len(data) == 8
    assert data[4:] == b"\xff\xff\xff\xff"
    assert ServiceFlags.from_bytes(data) == flags


def test_service_flags_from_all_ones():
    assert ServiceFlags.from_bytes(b"\xff\xff\xff\xff") == 0xFFFFFFFF


def test_service_flag_values():
    assert ServiceFlags(0x1) == ServiceFlags.PERSISTENT
    assert ServiceFlags(0x10) == ServiceFlags.SCHED_SH_PORT == ServiceFlags.SCHED_MH_PORT
    assert DestinationFlags(0x3) & DestinationFlags.FORWARD_MASK == DestinationFlags.FORWARD_ROUTE


@pytest.mark.parametrize("service,text", [
    (Service(firewall_mark=4, scheduler="lc"), "FWM 4 (lc)"),
    (Service(address="1.2.3.4", protocol=6, port=80, scheduler="wlc"), "TCP 1.2.3.4:80 (wlc)"),
    (Service(address="2012::beef", protocol=17, port=53, scheduler="rr"),
     "UDP [2012::beef]:53 (rr)"),
])
def test_service_str(service, text):
    assert str(service) == text


@pytest.mark.parametrize("destination,text", [
    (Destination(address="1.2.3.4", port=54321), "1.2.3.4:54321"),
    (Destination(address="2002::cafe", port=53), "[2002::cafe]:53"),
])
def test_destination_str(destination, text):
    assert str(destination) == text


def test_service_equal_ignores_statistics_and_destinations():
    a = Service(address="1.2.3.4", protocol=6, port=80, scheduler="wlc",
                statistics=_service_stats())
    b = Service(address="::ffff:1.2.3.4", protocol=6, port=80, scheduler="wlc",
                destinations=[Destination(address="10.0.0.1")])
    assert a.equal(b)
    assert not a.equal(dataclasses.replace(b, port=81))
    assert not a.equal(dataclasses.replace(b, scheduler="rr"))


def test_destination_equal():
    a = Destination(address="1.2.3.4", port=80, weight=1,
                    statistics=_destination_stats())
    b = Destination(address="1.2.3.4", port=80, weight=1)
    assert a.equal(b)
    assert not a.equal(dataclasses.replace(b, weight=2))
    assert not a.equal(dataclasses.replace(b, address="1.2.3.5"))


def test_invalid_address_raises():
    with pytest.raises(ValueError):
        Service(address="not-an-ip")