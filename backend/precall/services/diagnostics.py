"""Path diagnostics - which candidates were gathered and which path was used.

Two sources are merged: the candidate descriptors the transport gathered while
connecting, and the raw statistics report it can produce afterwards. The
statistics are not always complete, so flags seen in gathered candidates are
kept even when the report does not confirm them.
"""
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..utils.candidate import ParsedCandidate
from ..utils.stats import (
    as_bool,
    candidate_ip,
    is_relay_candidate,
    is_srflx_candidate,
    normalize_raw_stats,
    process_ice_stats,
)

logger = logging.getLogger(__name__)

_RELAY_PROTOCOLS = ("udp", "tcp", "tls")


@dataclass
class LocalIpInfo:
    """A local address seen in a non-relay candidate."""
    ip: str
    candidate_type: str
    network_type: str = "unknown"


@dataclass
class PathDiagnostics:
    """Canonical summary of the relay path."""
    turn_ip_address: str = ""
    turn_ip_version: str = ""
    turn_transport: str = ""
    turn_network_type: str = ""
    ice_servers: List[Dict[str, Any]] = field(default_factory=list)
    ipv6_supported: bool = False
    ipv4_supported: bool = False
    relay_tls_gathered: bool = False
    relay_tcp_gathered: bool = False
    relay_udp_gathered: bool = False
    srflx_gathered: bool = False
    relay_tls_success: bool = False
    relay_tcp_success: bool = False
    relay_udp_success: bool = False
    srflx_success: bool = False
    local_ip_address_info: List[LocalIpInfo] = field(default_factory=list)
    local_ip: Optional[str] = None
    number_of_local_ips: int = 0
    local_ip_type: Optional[str] = None
    local_ip_network_type: str = ""


@dataclass
class GatheredCandidates:
    """Bookkeeping for candidates seen while the channel was negotiated."""
    relay_udp_gathered: bool = False
    relay_tcp_gathered: bool = False
    relay_tls_gathered: bool = False
    srflx_gathered: bool = False
    local_ips: List[LocalIpInfo] = field(default_factory=list)
    local_ip: Optional[str] = None
    local_ip_type: Optional[str] = None
    public_ip_count: int = 0

    def add(self, descriptor: str) -> ParsedCandidate:
        """Record a gathered candidate descriptor."""
        parsed = ParsedCandidate.parse(descriptor)

        if parsed.is_relay:
            if parsed.transport_type == "UDP":
                self.relay_udp_gathered = True
            elif parsed.transport_type == "TCP":
                self.relay_tcp_gathered = True
            elif parsed.transport_type == "TLS":
                self.relay_tls_gathered = True
            return parsed

        if parsed.is_server_reflexive:
            self.srflx_gathered = True

        if not parsed.ip_address:
            return parsed
        if all(info.ip != parsed.ip_address for info in self.local_ips):
            self.local_ips.append(LocalIpInfo(ip=parsed.ip_address, candidate_type=parsed.candidate_type))
            if parsed.is_public:
                self.public_ip_count += 1
        if parsed.is_public and self.local_ip is None:
            self.local_ip = parsed.ip_address
            self.local_ip_type = parsed.candidate_type
        return parsed


def strip_credentials(servers: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Copy of the server list without credentials."""
    stripped = copy.deepcopy(list(servers or []))
    for server in stripped:
        if isinstance(server, dict):
            server.pop("credential", None)
    return stripped


def _mark_relay(diagnostics: PathDiagnostics, candidate: Dict[str, Any], outcome: str):
    protocol = candidate.get("relayProtocol")
    if protocol in _RELAY_PROTOCOLS:
        setattr(diagnostics, f"relay_{protocol}_{outcome}", True)


def build_path_diagnostics(
    servers: List[Dict[str, Any]],
    gathered: GatheredCandidates,
    raw_stats: Any,
) -> PathDiagnostics:
    """Merge gathered candidates and a raw stats report into PathDiagnostics."""
    diagnostics = PathDiagnostics(ice_servers=strip_credentials(servers))
    diagnostics.relay_udp_gathered = gathered.relay_udp_gathered
    diagnostics.relay_tcp_gathered = gathered.relay_tcp_gathered
    diagnostics.relay_tls_gathered = gathered.relay_tls_gathered
    diagnostics.srflx_gathered = gathered.srflx_gathered

    ice = process_ice_stats(normalize_raw_stats(raw_stats))

    diagnostics.local_ip = gathered.local_ip
    diagnostics.local_ip_type = gathered.local_ip_type
    diagnostics.number_of_local_ips = gathered.public_ip_count
    for known in gathered.local_ips:
        info = LocalIpInfo(ip=known.ip, candidate_type=known.candidate_type, network_type=known.network_type)
        for candidate in ice.local_candidates:
            network_type = candidate.get("networkType")
            if candidate_ip(candidate) == info.ip and network_type and network_type != "unknown":
                info.network_type = network_type
        diagnostics.local_ip_address_info.append(info)

    found_active = False
    for pair in ice.candidate_pairs:
        if not (as_bool(pair.get("googActiveConnection")) or as_bool(pair.get("selected"))):
            continue
        for candidate in ice.local_candidates:
            ip = candidate_ip(candidate)

            if candidate.get("id") == pair.get("localCandidateId"):
                diagnostics.turn_ip_address = ip or ""
                diagnostics.turn_network_type = candidate.get("networkType") or ""
                diagnostics.local_ip_network_type = candidate.get("networkType") or ""
                diagnostics.turn_ip_version = "ipv6" if ip and ":" in ip else "ipv4"
                diagnostics.turn_transport = candidate.get("relayProtocol") or ""
                found_active = True

            # the active relay candidate does not always reach the succeeded state
            if is_relay_candidate(candidate):
                _mark_relay(diagnostics, candidate, "success")

            if not ip:
                continue
            if ":" in ip:
                diagnostics.ipv6_supported = True
            else:
                diagnostics.ipv4_supported = True

    for candidate in ice.local_candidates:
        if is_relay_candidate(candidate):
            _mark_relay(diagnostics, candidate, "gathered")
        if is_srflx_candidate(candidate):
            diagnostics.srflx_gathered = True

    for pair in ice.candidate_pairs:
        if pair.get("state") != "succeeded":
            continue
        for candidate in ice.local_candidates:
            if candidate.get("id") != pair.get("localCandidateId"):
                continue
            if is_relay_candidate(candidate):
                _mark_relay(diagnostics, candidate, "success")
            if is_srflx_candidate(candidate):
                diagnostics.srflx_success = True

    if not found_active:
        logger.debug("Active candidate pair not found in stats")
    return diagnostics
