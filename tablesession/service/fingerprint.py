from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

# Hash of empty input; sessions carrying it come from an unidentifiable client
UNKNOWN_DEVICE = hashlib.sha256(b":::").hexdigest()

_USER_AGENT_SUMMARY_LENGTH = 200


@dataclass(frozen=True)
class ClientInfo:
    """Connection metadata of the request that is creating or using a session."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    accept_language: Optional[str] = None
    accept_encoding: Optional[str] = None


def create_device_fingerprint(client: ClientInfo, *, include_ip: bool = False) -> str:
    """Derive a stable, non-reversible device identifier.

    The client IP is left out unless ``include_ip`` is set: phones hop between
    networks constantly and an IP-bound fingerprint would fail every refresh
    after a cell handover. An all-empty client hashes to ``UNKNOWN_DEVICE``.
    """
    parts = [
        (client.user_agent or "").strip(),
        (client.accept_language or "").strip(),
        (client.accept_encoding or "").strip(),
        (client.ip_address or "").strip() if include_ip else "",
    ]
    return hashlib.sha256(":".join(parts).encode("utf-8")).hexdigest()


def summarize_user_agent(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    return user_agent.strip()[:_USER_AGENT_SUMMARY_LENGTH] or None
