"""Peer discovery over multicast DNS and the registry of discovered peers."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import struct
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.PTR
import dns.rdtypes.ANY.TXT
import dns.rdtypes.IN.A
import dns.rdtypes.IN.AAAA
import dns.rdtypes.IN.SRV
import dns.rrset
import dns.wire
import psutil

from .identity import UserIdentity
from .protocol import IpcPeer, ProtocolError

__all__ = [
    "MDNS_SERVICE_TYPE",
    "MDNS_GROUP",
    "MDNS_PORT",
    "DEFAULT_TTL",
    "ServiceRecord",
    "PeerRegistry",
    "MdnsService",
    "local_ipv4_interface",
    "hostname_component",
    "service_fullname",
    "build_announcement",
    "parse_announcement",
]

logger = logging.getLogger(__name__)

MDNS_SERVICE_TYPE = "_localchat._tcp.local."
MDNS_GROUP = "224.0.0.251"
MDNS_PORT = 5353
DEFAULT_TTL = 120
SERVICE_VERSION = "0.1.0"
FALLBACK_HOST = "localchat-host"
FALLBACK_IP = "0.0.0.0"
FALLBACK_INTERFACE = "DefaultIface"

_CLASS_MASK = 0x7FFF
_IN = dns.rdataclass.IN


@dataclass(frozen=True)
class ServiceRecord:
    """One advertised chat service; a ``ttl`` of 0 means it is going away."""

    fullname: str
    hostname: str
    addresses: Tuple[str, ...] = ()
    port: int = 0
    properties: Dict[str, str] = field(default_factory=dict)
    ttl: int = DEFAULT_TTL

    def __post_init__(self) -> None:
        object.__setattr__(self, "addresses", tuple(self.addresses))
        object.__setattr__(self, "properties", dict(self.properties))

    @property
    def instance_name(self) -> str:
        return self.fullname.split(".", 1)[0]


def local_ipv4_interface() -> Optional[Tuple[str, str]]:
    """The first non-loopback IPv4 address and the name of its interface."""
    for name, addresses in psutil.net_if_addrs().items():
        for addr in addresses:
            if addr.family != socket.AF_INET:
                continue
            try:
                ip = ipaddress.ip_address(addr.address)
            except ValueError:
                continue
            if not ip.is_loopback:
                logger.info("Found local IP %s on interface %s", addr.address, name)
                return addr.address, name
    logger.warning("Could not find a suitable local IPv4 address.")
    return None


def hostname_component(iface_name: str) -> str:
    """Turn an interface name into a lower-case host label."""
    mapped = "".join(
        (ch.lower() if ch.isascii() else ch) if ch.isalnum() or ch == "-" else "-"
        for ch in iface_name
    )
    return mapped.strip("-") or FALLBACK_HOST


def service_fullname(instance_name: str) -> str:
    """The full service name of an instance of the chat service."""
    return f"{instance_name}.{MDNS_SERVICE_TYPE}"


# --- wire helpers ---------------------------------------------------------

def _to_name(text: str) -> dns.name.Name:
    labels = [label.encode("utf-8") for label in text.rstrip(".").split(".")]
    return dns.name.Name(labels + [b""])


def _name_text(name: dns.name.Name) -> str:
    return ".".join(label.decode("utf-8", "replace") for label in name.labels if label) + "."


def _rrset(name: dns.name.Name, rdtype, ttl: int, rdatas: Iterable) -> dns.rrset.RRset:
    rrset = dns.rrset.RRset(name, _IN, rdtype)
    for rdata in rdatas:
        rrset.add(rdata, ttl)
    return rrset


def build_announcement(record: ServiceRecord) -> bytes:
    """Encode a record as an mDNS response carrying PTR, SRV, TXT and address records."""
    instance, _, service_type = record.fullname.partition(".")
    if not instance or not service_type.strip("."):
        raise ValueError(f"not a service instance name: {record.fullname!r}")
    full = _to_name(record.fullname)
    host = _to_name(record.hostname)
    ttl = record.ttl

    message = dns.message.Message(id=0)
    message.flags = dns.flags.QR | dns.flags.AA
    message.answer.append(_rrset(
        _to_name(service_type), dns.rdatatype.PTR, ttl,
        [dns.rdtypes.ANY.PTR.PTR(_IN, dns.rdatatype.PTR, full)],
    ))
    message.answer.append(_rrset(
        full, dns.rdatatype.SRV, ttl,
        [dns.rdtypes.IN.SRV.SRV(_IN, dns.rdatatype.SRV, 0, 0, record.port, host)],
    ))
    strings = [f"{key}={value}".encode("utf-8") for key, value in record.properties.items()]
    message.answer.append(_rrset(
        full, dns.rdatatype.TXT, ttl,
        [dns.rdtypes.ANY.TXT.TXT(_IN, dns.rdatatype.TXT, strings or [b""])],
    ))

    v4 = [a for a in record.addresses if ipaddress.ip_address(a).version == 4]
    v6 = [a for a in record.addresses if ipaddress.ip_address(a).version == 6]
    if v4:
        message.additional.append(_rrset(
            host, dns.rdatatype.A, ttl,
            [dns.rdtypes.IN.A.A(_IN, dns.rdatatype.A, a) for a in v4],
        ))
    if v6:
        message.additional.append(_rrset(
            host, dns.rdatatype.AAAA, ttl,
            [dns.rdtypes.IN.AAAA.AAAA(_IN, dns.rdatatype.AAAA, a) for a in v6],
        ))
    return message.to_wire()


def _build_query(service_type: str = MDNS_SERVICE_TYPE) -> bytes:
    message = dns.message.Message(id=0)
    message.flags = 0
    message.question.append(dns.rrset.RRset(_to_name(service_type), _IN, dns.rdatatype.PTR))
    return message.to_wire()


def _walk(data: bytes):
    """Split a packet into its flags, questions and resource records."""
    try:
        parser = dns.wire.Parser(bytes(data))
        _ident, flags, qdcount, ancount, nscount, arcount = parser.get_struct("!HHHHHH")
        questions = []
        for _ in range(qdcount):
            name = parser.get_name()
            qtype, _qclass = parser.get_struct("!HH")
            questions.append((name, qtype))
        records = []
        for _ in range(ancount + nscount + arcount):
            name = parser.get_name()
            rdtype, rdclass, ttl, rdlen = parser.get_struct("!HHIH")
            start = parser.current
            try:
                with parser.restrict_to(rdlen):
                    rdata = dns.rdata.from_wire_parser(rdclass & _CLASS_MASK, rdtype, parser)
            except (dns.exception.DNSException, ValueError):
                if start + rdlen > len(data):
                    raise
                parser.seek(start + rdlen)
                continue
            records.append((name, rdata, ttl))
    except (dns.exception.DNSException, struct.error, ValueError) as exc:
        raise ProtocolError(f"malformed mDNS packet: {exc}") from exc
    return flags, questions, records


def _properties(strings: Iterable[bytes]) -> Dict[str, str]:
    found: Dict[str, str] = {}
    for entry in strings:
        key, sep, value = entry.partition(b"=")
        if not sep or not key:
            continue
        try:
            text_key, text_value = key.decode("utf-8"), value.decode("utf-8")
        except UnicodeDecodeError:
            continue
        found.setdefault(text_key, text_value)
    return found


def _collect(records, service_type: str = MDNS_SERVICE_TYPE) -> List[ServiceRecord]:
    wanted = service_type.lower()
    pointers: List[Tuple[str, int]] = []
    services: Dict[str, Tuple[object, int]] = {}
    texts: Dict[str, Dict[str, str]] = {}
    addresses: Dict[str, List[str]] = defaultdict(list)

    for name, rdata, ttl in records:
        key = _name_text(name).lower()
        rdtype = rdata.rdtype
        if rdtype == dns.rdatatype.PTR and key == wanted:
            pointers.append((_name_text(rdata.target), ttl))
        elif rdtype == dns.rdatatype.SRV:
            services.setdefault(key, (rdata, ttl))
        elif rdtype == dns.rdatatype.TXT:
            texts.setdefault(key, _properties(rdata.strings))
        elif rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
            if rdata.address not in addresses[key]:
                addresses[key].append(rdata.address)

    result: List[ServiceRecord] = []
    seen = set()
    for fullname, ttl in pointers:
        key = fullname.lower()
        if key in seen:
            continue
        seen.add(key)
        properties = texts.get(key, {})
        service = services.get(key)
        if service is None:
            if ttl == 0:
                result.append(ServiceRecord(fullname, "", (), 0, properties, 0))
            continue
        srv, _srv_ttl = service
        host = _name_text(srv.target)
        result.append(ServiceRecord(
            fullname, host, tuple(addresses.get(host.lower(), ())), srv.port, properties, ttl,
        ))
    return result


def parse_announcement(data: bytes) -> List[ServiceRecord]:
    """The chat services announced in an mDNS packet; raises ``ProtocolError`` if malformed."""
    _flags, _questions, records = _walk(data)
    return _collect(records)


# --- peer registry --------------------------------------------------------

class PeerRegistry:
    """Peers known from discovery, keyed by their full message id."""

    def __init__(self) -> None:
        self._peers: Dict[str, IpcPeer] = {}

    def resolved(self, record: ServiceRecord, own_fullname: Optional[str] = None) -> Optional[IpcPeer]:
        """Record a resolved service; returns the stored peer, or ``None`` if it was skipped."""
        if record.fullname == own_fullname:
            logger.info("mDNS: ignored own service %s", record.fullname)
            return None
        peer_id = record.properties.get("full_id")
        if peer_id is None:
            peer_id = record.fullname
        username = record.properties.get("username")
        if username is None:
            username = record.fullname.split(".", 1)[0]

        chosen = None
        for address in record.addresses:
            try:
                ip = ipaddress.ip_address(address)
            except ValueError:
                continue
            if ip.version == 4 and not ip.is_loopback:
                chosen = address
                break
        if chosen is None:
            logger.warning(
                "mDNS: resolved %s but found no usable IPv4 address in %s",
                record.fullname, record.addresses,
            )
            return None

        peer = IpcPeer(id=peer_id, username=username, ip=chosen, port=record.port)
        self._peers[peer_id] = peer
        logger.info("mDNS: peer %r at %s:%s, %d known", peer_id, chosen, record.port, len(self._peers))
        return peer

    def removed(self, fullname: str) -> Optional[IpcPeer]:
        """Forget the first peer matching a withdrawn service name."""
        instance = fullname.split(".", 1)[0]
        for key, peer in self._peers.items():
            if peer.username.startswith(instance) or instance in key:
                del self._peers[key]
                logger.info("mDNS: removed peer %r for %s", key, fullname)
                return peer
        logger.warning("mDNS: service %s removed but no matching peer", fullname)
        return None

    def clear(self) -> None:
        self._peers.clear()

    def get(self, peer_id: str) -> Optional[IpcPeer]:
        return self._peers.get(peer_id)

    def peers(self) -> List[IpcPeer]:
        return list(self._peers.values())

    def __len__(self) -> int:
        return len(self._peers)


# --- mDNS responder and browser ------------------------------------------

def _multicast_socket(group: str, port: int, interface: Optional[str]) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            except OSError:
                pass
        sock.bind(("", port))
        iface = socket.inet_aton(interface or "0.0.0.0")
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, socket.inet_aton(group) + iface)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 255)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
        if interface:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_IF, iface)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class MdnsService(asyncio.DatagramProtocol):
    """Announces this daemon's service and feeds discovered peers into a registry."""

    def __init__(
        self,
        registry: PeerRegistry,
        *,
        group: str = MDNS_GROUP,
        port: int = MDNS_PORT,
        interface: Optional[str] = None,
    ) -> None:
        self.registry = registry
        self.record: Optional[ServiceRecord] = None
        self._destination = (group, port)
        self._interface = interface
        self._transport: Optional[asyncio.DatagramTransport] = None

    @property
    def own_fullname(self) -> Optional[str]:
        return None if self.record is None else self.record.fullname

    # asyncio protocol callbacks

    def connection_made(self, transport) -> None:
        self._transport = transport

    def connection_lost(self, exc) -> None:
        self._transport = None

    def error_received(self, exc) -> None:
        logger.error("mDNS socket error: %s", exc)

    def datagram_received(self, data: bytes, addr) -> None:
        try:
            flags, questions, records = _walk(data)
        except ProtocolError as exc:
            logger.debug("mDNS: ignored packet from %s: %s", addr, exc)
            return
        if flags & dns.flags.QR:
            for record in _collect(records):
                self._apply(record)
        elif self.record is not None and self._asks_for_us(questions):
            self._send(build_announcement(self.record))

    # public operations

    async def start(self) -> None:
        """Join the multicast group and ask for peers, unless already started."""
        if self._transport is not None:
            return
        sock = _multicast_socket(self._destination[0], self._destination[1], self._interface)
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(lambda: self, sock=sock)
        logger.info("mDNS: browsing for %s", MDNS_SERVICE_TYPE)
        self._send(_build_query())

    async def register(self, identity: UserIdentity, port: int) -> ServiceRecord:
        """Announce the service for ``identity``, withdrawing an earlier one of another name."""
        found = local_ipv4_interface()
        ip, iface = found if found is not None else (FALLBACK_IP, FALLBACK_INTERFACE)
        record = ServiceRecord(
            fullname=service_fullname(identity.m_dns_instance_name),
            hostname=f"{hostname_component(iface)}.local.",
            addresses=(ip,),
            port=port,
            properties={
                "username": identity.user_provided_name,
                "full_id": identity.full_message_id,
                "version": SERVICE_VERSION,
            },
        )
        announcement = build_announcement(record)
        previous = self.record
        await self.start()
        if previous is not None and previous.fullname != record.fullname:
            self._send(build_announcement(replace(previous, ttl=0)))
        self.record = record
        self._send(announcement)
        logger.info("mDNS: registered %s on port %s", record.fullname, port)
        return record

    def close(self) -> None:
        """Withdraw the announced service and leave the multicast group."""
        if self._transport is None:
            return
        if self.record is not None:
            self._send(build_announcement(replace(self.record, ttl=0)))
        transport, self._transport = self._transport, None
        transport.close()

    # helpers

    def _send(self, data: bytes) -> None:
        if self._transport is not None:
            self._transport.sendto(data, self._destination)

    def _asks_for_us(self, questions) -> bool:
        own = (self.own_fullname or "").lower()
        for name, qtype in questions:
            text = _name_text(name).lower()
            if text == MDNS_SERVICE_TYPE.lower() and qtype in (dns.rdatatype.PTR, dns.rdatatype.ANY):
                return True
            if own and text == own:
                return True
        return False

    def _apply(self, record: ServiceRecord) -> None:
        own = self.own_fullname
        if record.ttl == 0:
            if own is not None and record.fullname.lower() == own.lower():
                return
            self.registry.removed(record.fullname)
        else:
            self.registry.resolved(record, own)