"""Compute Engine side of the Windows builder.

Instance lifecycle (``lifecycle``) and the metadata/serial-console password
handshake (``password``).
"""

from __future__ import annotations

from .instances import InstanceDescriptor, InstanceState
from .lifecycle import VMLifecycleManager
from .password import (
    CredentialExchange,
    KeyExchangeRequest,
    KeyExchangeResponse,
    decrypt_password,
    match_response,
    matching_responses,
    parse_responses,
)

__all__ = [
    "CredentialExchange",
    "InstanceDescriptor",
    "InstanceState",
    "KeyExchangeRequest",
    "KeyExchangeResponse",
    "VMLifecycleManager",
    "decrypt_password",
    "match_response",
    "matching_responses",
    "parse_responses",
]
