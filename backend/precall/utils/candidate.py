"""Candidate descriptor parsing.

Candidate lines look like:

    candidate:911959162 1 udp 2113937151 192.168.1.175 49977 typ host generation 0
    candidate:3941065291 1 udp 33562367 172.18.0.2 30704 typ relay raddr 0.0.0.0 rport 0

Fields of interest by position: 1 component id, 2 transport protocol,
3 priority, 4 address, 5 port, 7 candidate type.
"""
from dataclasses import dataclass
from typing import Optional

CANDIDATE_HOST = "host"
CANDIDATE_SRFLX = "srflx"
CANDIDATE_PRFLX = "prflx"
CANDIDATE_RELAY = "relay"

TRANSPORT_TYPE_NONE = "None"

# Top byte of a relay candidate's priority encodes how the relay was reached
_RELAY_TRANSPORT_BY_PREFERENCE = {
    0: "TLS",
    1: "TCP",
    2: "UDP",
}

_MIN_FIELDS = 8


def relay_transport_from_priority(priority) -> str:
    """Map the top byte of a candidate priority to TLS, TCP, UDP or None."""
    try:
        preference = int(priority) >> 24
    except (TypeError, ValueError):
        return TRANSPORT_TYPE_NONE
    return _RELAY_TRANSPORT_BY_PREFERENCE.get(preference, TRANSPORT_TYPE_NONE)


def candidate_priority(type_preference: int, local_preference: int = 65535, component: int = 1) -> int:
    """Compute a candidate priority from its parts."""
    return (type_preference << 24) | (local_preference << 8) | (256 - component)


def format_candidate(
    foundation: str,
    component: int,
    protocol: str,
    priority: int,
    ip_address: str,
    port: int,
    candidate_type: str,
    related_address: Optional[str] = None,
    related_port: Optional[int] = None,
) -> str:
    """Render a candidate descriptor line."""
    line = f"candidate:{foundation} {component} {protocol} {priority} {ip_address} {port} typ {candidate_type}"
    if related_address is not None:
        line += f" raddr {related_address} rport {related_port if related_port is not None else 0}"
    return f"{line} generation 0"


@dataclass
class ParsedCandidate:
    """Canonical view of a single candidate descriptor."""
    raw: str
    component: str = "rtcp"
    transport_protocol: str = ""
    transport_type: str = TRANSPORT_TYPE_NONE
    ip_address: str = ""
    port: Optional[int] = None
    candidate_type: str = TRANSPORT_TYPE_NONE

    @classmethod
    def parse(cls, descriptor: str) -> "ParsedCandidate":
        """Parse a descriptor; malformed input yields a candidate of type None."""
        candidate = cls(raw=descriptor or "")
        fields = candidate.raw.strip().split(" ")
        if len(fields) < _MIN_FIELDS:
            return candidate

        candidate.component = "rtp" if fields[1] == "1" else "rtcp"
        candidate.transport_protocol = fields[2].lower()
        if candidate.component == "rtp":
            candidate.transport_type = relay_transport_from_priority(fields[3])
        candidate.ip_address = fields[4]
        try:
            candidate.port = int(fields[5])
        except ValueError:
            candidate.port = None

        candidate_type = fields[7].lower()
        if candidate_type == "relayed":
            candidate_type = CANDIDATE_RELAY
        candidate.candidate_type = candidate_type
        return candidate

    @property
    def is_host(self) -> bool:
        return self.candidate_type == CANDIDATE_HOST

    @property
    def is_server_reflexive(self) -> bool:
        return self.candidate_type == CANDIDATE_SRFLX

    @property
    def is_peer_reflexive(self) -> bool:
        return self.candidate_type == CANDIDATE_PRFLX

    @property
    def is_relay(self) -> bool:
        return self.candidate_type == CANDIDATE_RELAY

    @property
    def is_public(self) -> bool:
        """Reflexive candidates expose an address seen from outside."""
        return self.candidate_type in (CANDIDATE_SRFLX, CANDIDATE_PRFLX)

    @property
    def is_ipv6(self) -> bool:
        return ":" in self.ip_address

    @property
    def is_udp(self) -> bool:
        return self.transport_protocol == "udp"

    @property
    def is_tcp(self) -> bool:
        return self.transport_protocol == "tcp"
