"""Configuration for the passkey client core."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from fido2.webauthn import ResidentKeyRequirement, UserVerificationRequirement

__all__ = [
    "ClientConfig",
    "DEFAULT_TIMEOUT_MS",
    "configure_logging",
    "load_config",
]

DEFAULT_TIMEOUT_MS = 60000


def _env_flag(environ: Mapping[str, str], name: str) -> Optional[bool]:
    """Return ``True`` or ``False`` when the named env var is explicitly set."""

    raw_value = environ.get(name)
    if raw_value is None:
        return None

    normalised = raw_value.strip().lower()
    if normalised in {"", "0", "false", "off", "no"}:
        return False
    return True


def _env_int(environ: Mapping[str, str], name: str) -> Optional[int]:
    raw_value = environ.get(name)
    if raw_value is None or not raw_value.strip():
        return None
    try:
        value = int(raw_value.strip(), 10)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw_value!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _env_requirement(environ: Mapping[str, str], name: str, enum_cls):
    raw_value = environ.get(name)
    if raw_value is None or not raw_value.strip():
        return None
    try:
        parsed = enum_cls(raw_value.strip().lower())
    except ValueError:
        parsed = None
    if parsed is None:
        choices = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"{name} must be one of {choices}, got {raw_value!r}")
    return parsed


@dataclass(frozen=True)
class ClientConfig:
    """Policy knobs for a :class:`~passkey_nfc.client.PasskeyClient`.

    The residentKey and userVerification defaults apply only when a description
    omits them. Creation and request flows are configured separately.
    """

    timeout_ms: int = DEFAULT_TIMEOUT_MS
    resident_key: ResidentKeyRequirement = ResidentKeyRequirement.DISCOURAGED
    create_user_verification: UserVerificationRequirement = (
        UserVerificationRequirement.PREFERRED
    )
    get_user_verification: UserVerificationRequirement = (
        UserVerificationRequirement.PREFERRED
    )
    strict_cbor: bool = True
    extended_apdu: bool = False

    def __post_init__(self):
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")


def load_config(environ: Optional[Mapping[str, str]] = None) -> ClientConfig:
    """Build a :class:`ClientConfig` from ``PASSKEY_NFC_*`` environment variables."""

    env = os.environ if environ is None else environ
    overrides = {}

    timeout_ms = _env_int(env, "PASSKEY_NFC_TIMEOUT_MS")
    if timeout_ms is not None:
        overrides["timeout_ms"] = timeout_ms

    resident_key = _env_requirement(env, "PASSKEY_NFC_RESIDENT_KEY", ResidentKeyRequirement)
    if resident_key is not None:
        overrides["resident_key"] = resident_key

    create_uv = _env_requirement(
        env, "PASSKEY_NFC_CREATE_USER_VERIFICATION", UserVerificationRequirement
    )
    if create_uv is not None:
        overrides["create_user_verification"] = create_uv

    get_uv = _env_requirement(
        env, "PASSKEY_NFC_GET_USER_VERIFICATION", UserVerificationRequirement
    )
    if get_uv is not None:
        overrides["get_user_verification"] = get_uv

    strict_cbor = _env_flag(env, "PASSKEY_NFC_STRICT_CBOR")
    if strict_cbor is not None:
        overrides["strict_cbor"] = strict_cbor

    extended_apdu = _env_flag(env, "PASSKEY_NFC_EXTENDED_APDU")
    if extended_apdu is not None:
        overrides["extended_apdu"] = extended_apdu

    return ClientConfig(**overrides)


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Configure root logging for applications embedding the client."""

    level_name = (level or os.environ.get("PASSKEY_NFC_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return logging.getLogger("passkey_nfc")
