"""Random WebAuthn challenges."""
from __future__ import annotations

import binascii
import re
import secrets
from dataclasses import dataclass

from fido2.utils import websafe_decode, websafe_encode

__all__ = ["CHALLENGE_LENGTH", "Challenge", "decode_b64", "generate_challenge"]

CHALLENGE_LENGTH = 32

_B64URL_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def decode_b64(value: str) -> bytes:
    """Decode URL-safe base64, accepting missing padding and the standard alphabet."""

    if not isinstance(value, str):
        raise ValueError("base64 value must be a string")
    candidate = value.strip()
    if not candidate:
        raise ValueError("empty base64 value")
    candidate = candidate.replace("+", "-").replace("/", "_").rstrip("=")
    if not _B64URL_PATTERN.match(candidate) or len(candidate) % 4 == 1:
        raise ValueError("invalid base64 value")
    try:
        return websafe_decode(candidate)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("invalid base64 value") from exc


@dataclass(frozen=True)
class Challenge:
    """A 32 byte challenge, bound to a single operation."""

    value: bytes

    def __post_init__(self):
        if not isinstance(self.value, bytes) or len(self.value) != CHALLENGE_LENGTH:
            raise ValueError(f"Challenge must be exactly {CHALLENGE_LENGTH} bytes")

    def encode(self) -> str:
        """Return the URL-safe, unpadded base64 form used in JSON structures."""
        return websafe_encode(self.value)

    @classmethod
    def decode(cls, text: str) -> "Challenge":
        return cls(decode_b64(text))

    def __bytes__(self):
        return self.value

    def __repr__(self):
        return f"Challenge({self.encode()!r})"


def generate_challenge() -> Challenge:
    return Challenge(secrets.token_bytes(CHALLENGE_LENGTH))
