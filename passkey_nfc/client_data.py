"""Collected client data serialization."""
from __future__ import annotations

import json
from typing import Union

from fido2.utils import sha256
from fido2.webauthn import CollectedClientData

from .errors import EncodingError

__all__ = [
    "TYPE_CREATE",
    "TYPE_GET",
    "build_client_data",
    "client_data_hash",
    "parse_client_data",
]

TYPE_CREATE = CollectedClientData.TYPE.CREATE.value
TYPE_GET = CollectedClientData.TYPE.GET.value

_CLIENT_DATA_TYPES = (TYPE_CREATE, TYPE_GET)


def build_client_data(type: str, origin: str, challenge_b64: str) -> bytes:
    """Serialize ``{"type","challenge","origin"}`` in that order as compact UTF-8 JSON.

    The output is byte-for-byte reproducible from the same inputs; its SHA-256 is
    what the authenticator signs over.
    """

    if type not in _CLIENT_DATA_TYPES:
        raise EncodingError(f"Unsupported client data type: {type!r}")
    for name, value in (("origin", origin), ("challenge", challenge_b64)):
        if not isinstance(value, str) or not value:
            raise EncodingError(f"Client data {name} must be a non-empty string")

    payload = {"type": type, "challenge": challenge_b64, "origin": origin}
    text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    try:
        return text.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise EncodingError("Client data contains characters outside UTF-8") from exc


def client_data_hash(data: bytes) -> bytes:
    return sha256(data)


def parse_client_data(data: Union[bytes, CollectedClientData]) -> CollectedClientData:
    if isinstance(data, CollectedClientData):
        return data
    try:
        return CollectedClientData(bytes(data))
    except (ValueError, KeyError, TypeError) as exc:
        raise EncodingError("Client data is not valid WebAuthn JSON") from exc
