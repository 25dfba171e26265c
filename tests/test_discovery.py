import socket
from collections import namedtuple
from unittest import mock

import dns.message
import dns.name
import dns.rdataclass
import dns.rdatatype
import dns.rrset
import pytest

from localchat.discovery import (
    MDNS_GROUP,
    MDNS_PORT,
    MDNS_SERVICE_TYPE,
    MdnsService,
    PeerRegistry,
    ServiceRecord,
    build_announcement,
    hostname_component,
    local_ipv4_interface,
    parse_announcement,
    service_fullname,
)
from localchat.identity import make_identity
from localchat.protocol import ProtocolError

Addr = namedtuple("Addr", "family address netmask broadcast ptp")


def _addr(ip, family=socket.AF_INET):
    return Addr(family, ip, None, None, None)


INTERFACES = {
    "lo": [_addr("127.0.0.1")],
    "eth0": [_addr("fe80::1", socket.AF_INET6), _addr("192.168.1.20")],
}


def _record(name="Bob_zz", full_id="Bob - zz", username="Bob", ip="192.168.1.30", ttl=120):
    return ServiceRecord(
        fullname=service_fullname(name),
        hostname="eth0.local.",
        addresses=(ip,),
        port=4000,
        properties={"username": username, "full_id": full_id},
        ttl=ttl,
    )


class FakeTransport:
    def __init__(self):
        self.sent = []
        self.closed = False

    def sendto(self, data, addr):
        self.sent.append((data, addr))

    def close(self):
        self.closed = True


def _query(name=MDNS_SERVICE_TYPE):
    message = dns.message.Message(id=0)
    message.flags = 0
    message.question.append(
        dns.rrset.RRset(dns.name.from_text(name), dns.rdataclass.IN, dns.rdatatype.PTR)
    )
    return message.to_wire()


# --- helpers --------------------------------------------------------------

def test_service_fullname():
    assert service_fullname("MyCoolName_a1b2c3d4") == "MyCoolName_a1b2c3d4._localchat._tcp.local."


@pytest.mark.parametrize(
    "iface, expected",
    [("eth0", "eth0"), ("Wi-Fi 2", "wi-fi-2"), ("__", "localchat-host"), ("", "localchat-host")],
)
def test_hostname_component(iface, expected):
    assert hostname_component(iface) == expected


def test_local_ipv4_interface_skips_loopback_and_ipv6():
    with mock.patch("localchat.discovery.psutil.net_if_addrs", return_value=INTERFACES):
        assert local_ipv4_interface() == ("192.168.1.20", "eth0")


def test_local_ipv4_interface_none_found():
    with mock.patch("localchat.discovery.psutil.net_if_addrs", return_value={"lo": [_addr("127.0.0.1")]}):
        assert local_ipv4_interface() is None


# --- wire format ----------------------------------------------------------

def test_announcement_round_trip():
    record = _record()
    assert parse_announcement(build_announcement(record)) == [record]


def test_goodbye_round_trip_keeps_zero_ttl():
    record = _record(ttl=0)
    (parsed,) = parse_announcement(build_announcement(record))
    assert parsed.ttl == 0
    assert parsed.fullname == record.fullname


def test_other_service_type_is_ignored():
    record = ServiceRecord("x._other._tcp.local.", "h.local.", ("10.0.0.1",), 1, {})
    assert parse_announcement(build_announcement(record)) == []


def test_query_packet_has_no_records():
    assert parse_announcement(_query()) == []


def test_malformed_packet_raises():
    with pytest.raises(ProtocolError):
        parse_announcement(b"\x00\x01\x02")


def test_build_rejects_bare_name():
    with pytest.raises(ValueError):
        build_announcement(ServiceRecord("single", "h.local.", (), 1, {}))


def test_instance_name_property():
    assert _record(name="Alice_q").instance_name == "Alice_q"


# --- registry -------------------------------------------------------------

def test_resolved_uses_txt_properties():
    registry = PeerRegistry()
    peer = registry.resolved(_record())
    assert (peer.id, peer.username, peer.ip, peer.port) == ("Bob - zz", "Bob", "192.168.1.30", 4000)
    assert registry.get("Bob - zz") == peer


def test_resolved_falls_back_to_fullname():
    registry = PeerRegistry()
    record = ServiceRecord(service_fullname("Carol_1"), "h.local.", ("10.0.0.5",), 9, {})
    peer = registry.resolved(record)
    assert peer.id == record.fullname
    assert peer.username == "Carol_1"


def test_resolved_ignores_own_service():
    registry = PeerRegistry()
    record = _record()
    assert registry.resolved(record, record.fullname) is None
    assert registry.peers() == []


def test_resolved_without_usable_ipv4_is_skipped():
    registry = PeerRegistry()
    record = ServiceRecord(service_fullname("D_1"), "h.local.", ("127.0.0.1", "fe80::1"), 9, {})
    assert registry.resolved(record) is None
    assert len(registry) == 0


def test_removed_matches_username_prefix():
    registry = PeerRegistry()
    registry.resolved(_record(name="Bob_zz", username="Bob_zz"))
    removed = registry.removed(service_fullname("Bob_zz"))
    assert removed.username == "Bob_zz"
    assert registry.peers() == []


def test_removed_matches_id_substring():
    registry = PeerRegistry()
    registry.resolved(_record(full_id="id-Bob_zz-x", username="Robert"))
    assert registry.removed(service_fullname("Bob_zz")).id == "id-Bob_zz-x"
    assert len(registry) == 0


def test_removed_without_match_keeps_peers():
    registry = PeerRegistry()
    registry.resolved(_record())
    assert registry.removed(service_fullname("Nobody_1")) is None
    assert len(registry) == 1


def test_clear_empties_registry():
    registry = PeerRegistry()
    registry.resolved(_record())
    registry.clear()
    assert registry.peers() == []
    assert registry.get("Bob - zz") is None


# --- service --------------------------------------------------------------

@pytest.mark.asyncio
async def test_register_announces_identity():
    service = MdnsService(PeerRegistry())
    transport = FakeTransport()
    service.connection_made(transport)
    identity = make_identity("My Cool Name", "a1b2c3d4")
    with mock.patch("localchat.discovery.psutil.net_if_addrs", return_value=INTERFACES):
        await service.register(identity, 4000)
    data, destination = transport.sent[-1]
    assert destination == (MDNS_GROUP, MDNS_PORT)
    (record,) = parse_announcement(data)
    assert record.fullname == "MyCoolName_a1b2c3d4._localchat._tcp.local."
    assert record.hostname == "eth0.local."
    assert record.addresses == ("192.168.1.20",)
    assert record.port == 4000
    assert record.properties["full_id"] == identity.full_message_id
    assert record.properties["username"] == identity.user_provided_name
    assert service.own_fullname == record.fullname


@pytest.mark.asyncio
async def test_reregister_withdraws_old_name():
    service = MdnsService(PeerRegistry())
    transport = FakeTransport()
    service.connection_made(transport)
    old = make_identity("Old", "aaaa")
    with mock.patch("localchat.discovery.psutil.net_if_addrs", return_value=INTERFACES):
        await service.register(old, 4000)
        await service.register(make_identity("New", "bbbb"), 4000)
    goodbyes = [
        record
        for data, _ in transport.sent
        for record in parse_announcement(data)
        if record.ttl == 0
    ]
    assert [g.fullname for g in goodbyes] == [service_fullname(old.m_dns_instance_name)]


@pytest.mark.asyncio
async def test_answers_queries_after_registration():
    service = MdnsService(PeerRegistry())
    transport = FakeTransport()
    service.connection_made(transport)
    service.datagram_received(_query(), ("192.168.1.30", MDNS_PORT))
    assert transport.sent == []
    with mock.patch("localchat.discovery.psutil.net_if_addrs", return_value=INTERFACES):
        await service.register(make_identity("Al", "cc"), 4000)
    before = len(transport.sent)
    service.datagram_received(_query(), ("192.168.1.30", MDNS_PORT))
    assert len(transport.sent) == before + 1
    (record,) = parse_announcement(transport.sent[-1][0])
    assert record.fullname == service.own_fullname


def test_peer_announcement_updates_registry():
    registry = PeerRegistry()
    service = MdnsService(registry)
    service.connection_made(FakeTransport())
    service.datagram_received(build_announcement(_record()), ("192.168.1.30", MDNS_PORT))
    assert registry.get("Bob - zz").ip == "192.168.1.30"
    service.datagram_received(build_announcement(_record(ttl=0, username="Bob_zz")), ("x", 1))
    assert registry.get("Bob - zz") is None


def test_garbage_datagram_is_ignored():
    registry = PeerRegistry()
    service = MdnsService(registry)
    service.connection_made(FakeTransport())
    service.datagram_received(b"\xff", ("x", 1))
    assert registry.peers() == []


@pytest.mark.asyncio
async def test_own_announcement_is_not_a_peer_and_close_says_goodbye():
    registry = PeerRegistry()
    service = MdnsService(registry)
    transport = FakeTransport()
    service.connection_made(transport)
    with mock.patch("localchat.discovery.psutil.net_if_addrs", return_value=INTERFACES):
        await service.register(make_identity("Me", "dd"), 4000)
    service.datagram_received(transport.sent[-1][0], ("192.168.1.20", MDNS_PORT))
    assert registry.peers() == []
    service.close()
    assert transport.closed is True
    (record,) = parse_announcement(transport.sent[-1][0])
    assert record.ttl == 0
    assert record.fullname == service.own_fullname