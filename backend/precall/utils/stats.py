"""Raw path statistics normalization and classification.

Statistics reports come in several shapes depending on who produced them:

- accessor style: an object whose ``result()`` returns reports exposing
  ``names()`` and ``stat(name)``, fetched one field at a time
- iterables (or id-keyed mappings) of flat records
- records whose ``values`` field is a list of single-key sub-records

``normalize_raw_stats`` turns any of these into a list of plain dicts.
``classify_stats`` tags each record by its ``type`` and
``process_ice_stats`` extracts the candidate information used for the
path diagnostics.
"""
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .candidate import relay_transport_from_priority

KIND_TRACK = "track"
KIND_TRANSPORT = "transport"
KIND_LOCAL_CANDIDATE = "local-candidate"
KIND_REMOTE_CANDIDATE = "remote-candidate"
KIND_BWE = "bwe"
KIND_TRACK_STATS = "track-stats"
KIND_CANDIDATE_PAIR = "candidate-pair"
KIND_CODEC = "codec"

RELAY_TYPES = ("relay", "relayed")
SRFLX_TYPES = ("srflx", "serverreflexive")


@dataclass
class IceStats:
    """Candidate information extracted from a stats report."""
    local_candidates: List[Dict[str, Any]] = field(default_factory=list)
    remote_candidates: List[Dict[str, Any]] = field(default_factory=list)
    candidate_pairs: List[Dict[str, Any]] = field(default_factory=list)


def as_bool(value: Any) -> bool:
    """Interpret booleans that may have been reported as strings."""
    if isinstance(value, str):
        return value == "true"
    return bool(value)


def _is_accessor_report(item: Any) -> bool:
    return callable(getattr(item, "names", None)) and callable(getattr(item, "stat", None))


def _extract_reports(raw: Any) -> List[Any]:
    """Flatten the container shape into a list of individual reports."""
    if raw is None:
        return []
    result = getattr(raw, "result", None)
    if callable(result):
        return list(result())
    if isinstance(raw, Mapping):
        # A single record rather than an id-keyed collection
        if isinstance(raw.get("values"), list) or (
            "type" in raw and not isinstance(raw.get("type"), Mapping)
        ):
            return [raw]
        return list(raw.values())
    if isinstance(raw, Iterable) and not isinstance(raw, (str, bytes)):
        return list(raw)
    return [raw]


def _flatten_report(report: Any) -> Dict[str, Any]:
    """Convert one report of any shape into a flat dict."""
    stats: Dict[str, Any] = {}

    timestamp = getattr(report, "timestamp", None)
    report_type = getattr(report, "type", None)

    if _is_accessor_report(report):
        if report_type:
            stats["type"] = report_type
        for name in report.names():
            stats[name] = report.stat(name)
    elif isinstance(report, Mapping):
        stats.update(report)
        timestamp = report.get("timestamp")
    else:
        stats.update(vars(report))
        if report_type:
            stats["type"] = report_type

    if isinstance(timestamp, datetime):
        stats["timestamp"] = str(int(timestamp.timestamp() * 1000))

    values = stats.pop("values", None)
    if isinstance(values, list):
        for entry in values:
            if isinstance(entry, Mapping):
                stats.update(entry)
    elif values is not None:
        stats["values"] = values
    return stats


def normalize_raw_stats(raw: Any) -> List[Dict[str, Any]]:
    """Normalize a raw stats report of any supported shape into flat records."""
    return [_flatten_report(report) for report in _extract_reports(raw)]


def classify_stats(stats: Dict[str, Any]) -> Optional[Tuple[str, Any]]:
    """Classify a normalized record by its type tag.

    Returns ``(kind, payload)`` or None for record types that carry nothing
    of interest. Track payloads wrap the record with its ssrc and direction.
    """
    record_type = stats.get("type")

    if record_type in ("inbound-rtp", "inboundrtp", "outbound-rtp", "outboundrtp"):
        inbound = record_type in ("inbound-rtp", "inboundrtp")
        report_type = "local"
        if stats.get("isRemote") is not None:
            report_type = "remote" if as_bool(stats.get("isRemote")) else "local"
        return KIND_TRACK, {
            "data": stats,
            "ssrc": stats.get("ssrc"),
            "streamType": "inbound" if inbound else "outbound",
            "reportType": report_type,
        }
    if record_type == "candidatepair" and stats.get("selected"):
        return KIND_TRANSPORT, stats
    if record_type in ("localcandidate", "local-candidate"):
        return KIND_LOCAL_CANDIDATE, stats
    if record_type in ("remotecandidate", "remote-candidate"):
        return KIND_REMOTE_CANDIDATE, stats
    if record_type in ("transport", "googCandidatePair"):
        return KIND_TRANSPORT, stats
    if record_type == "VideoBwe":
        return KIND_BWE, stats
    if record_type == "track":
        return KIND_TRACK_STATS, stats
    if record_type == "candidate-pair":
        return KIND_CANDIDATE_PAIR, stats
    if record_type == "codec":
        return KIND_CODEC, stats
    if record_type == "ssrc":
        return KIND_TRACK, {
            "data": stats,
            "ssrc": stats.get("ssrc"),
            "streamType": "outbound" if stats.get("bytesSent") else "inbound",
            "reportType": "local",
        }
    return None


def candidate_ip(candidate: Dict[str, Any]) -> Optional[str]:
    """Address of a candidate record, whichever key the producer used."""
    return candidate.get("ip") or candidate.get("address") or candidate.get("ipAddress")


def process_ice_stats(records: List[Dict[str, Any]]) -> IceStats:
    """Collect candidates and candidate pairs from normalized records."""
    ice = IceStats()
    selected_pair_id = None

    for record in records:
        classified = classify_stats(record)
        if classified is None:
            continue
        kind, stats = classified

        if kind == KIND_CANDIDATE_PAIR:
            ice.candidate_pairs.append(stats)
        elif kind == KIND_TRANSPORT:
            if stats.get("type") == "transport":
                selected_pair_id = stats.get("selectedCandidatePairId")
                continue
            ice.candidate_pairs.append(stats)
        elif kind == KIND_LOCAL_CANDIDATE:
            if stats.get("candidateType") in RELAY_TYPES:
                protocol = stats.get("relayProtocol") or stats.get("mozLocalTransport")
                if not protocol:
                    protocol = relay_transport_from_priority(stats.get("priority"))
                stats["relayProtocol"] = str(protocol).lower()
            ice.local_candidates.append(stats)
        elif kind == KIND_REMOTE_CANDIDATE:
            ice.remote_candidates.append(stats)

    if selected_pair_id:
        for pair in ice.candidate_pairs:
            if pair.get("id") == selected_pair_id:
                pair["selected"] = True

    return ice


def is_relay_candidate(candidate: Dict[str, Any]) -> bool:
    return candidate.get("candidateType") in RELAY_TYPES


def is_srflx_candidate(candidate: Dict[str, Any]) -> bool:
    return candidate.get("candidateType") in SRFLX_TYPES


__all__ = [
    "IceStats",
    "as_bool",
    "candidate_ip",
    "classify_stats",
    "is_relay_candidate",
    "is_srflx_candidate",
    "normalize_raw_stats",
    "process_ice_stats",
]
