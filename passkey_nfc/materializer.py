"""Conversion of CTAP2 credential responses into canonical WebAuthn records."""
from __future__ import annotations

import dataclasses
import enum
import json
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import cbor2
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from fido2.utils import websafe_encode
from fido2.webauthn import (
    AttestationConveyancePreference,
    AttestationObject,
    AuthenticatorData,
)

from .errors import MalformedResponse

__all__ = [
    "AssertionCredential",
    "PublicKeyCredential",
    "canonicalize",
    "decode_response",
    "describe_authenticator_data",
    "materialize",
    "materialize_assertion",
    "materialize_attestation",
    "parse_assertion_response",
    "parse_attestation_response",
]

PUBLIC_KEY = "public-key"
CROSS_PLATFORM = "cross-platform"

_CTAP_FIELD_LABELS: Dict[str, Dict[int, str]] = {
    "makeCredentialResponse": {
        1: "fmt",
        2: "authData",
        3: "attStmt",
        4: "epAtt",
        5: "largeBlobKey",
        6: "unsignedExtensionOutputs",
    },
    "getAssertionResponse": {
        1: "credential",
        2: "authData",
        3: "signature",
        4: "user",
        5: "numberOfCredentials",
        6: "userSelected",
        7: "largeBlobKey",
        8: "unsignedExtensionOutputs",
    },
}

_CTAP_REQUIRED_FIELDS: Dict[str, Tuple[int, ...]] = {
    "makeCredentialResponse": (1, 2),
    "getAssertionResponse": (2, 3),
}

_EC_CURVES = {
    1: ec.SECP256R1,
    2: ec.SECP384R1,
    3: ec.SECP521R1,
    8: ec.SECP256K1,
}

_AUTH_DATA_MIN_LENGTH = 37
_AAGUID_OFFSET = 37
_AAGUID_LENGTH = 16

ResponseInput = Union[bytes, bytearray, memoryview, Mapping[int, Any]]


def _sorted_map_items(mapping: Mapping[Any, Any]) -> List[Tuple[bytes, Any, Any]]:
    encoded_items: List[Tuple[bytes, Any, Any]] = []
    seen_keys: set[bytes] = set()
    for key, value in mapping.items():
        encoded_key = cbor2.dumps(key, canonical=True)
        if encoded_key in seen_keys:
            raise ValueError("Duplicate map key detected during canonical ordering.")
        seen_keys.add(encoded_key)
        encoded_items.append((encoded_key, key, value))

    encoded_items.sort(key=lambda item: (len(item[0]), item[0]))
    return encoded_items


def canonicalize(value: Any) -> Any:
    """Return ``value`` with every map ordered by canonical CBOR key order."""

    if isinstance(value, Mapping):
        return {key: canonicalize(item) for _encoded, key, item in _sorted_map_items(value)}
    if isinstance(value, (list, tuple)):
        return [canonicalize(item) for item in value]
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    return value


def _json_safe(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return websafe_encode(bytes(value))
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            key: _json_safe(item)
            for key, item in dataclasses.asdict(value).items()
            if item is not None
        }
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


def decode_response(raw: ResponseInput) -> Dict[int, Any]:
    """Decode a CTAP2 response into its integer-keyed map.

    Bytes may carry the leading CTAP status byte; a non-zero status is rejected.
    """

    if isinstance(raw, Mapping):
        decoded: Any = raw
    elif isinstance(raw, (bytes, bytearray, memoryview)):
        data = bytes(raw)
        if not data:
            raise MalformedResponse("Empty authenticator response")
        if data[0] >> 5 != 5:
            if data[0] != 0x00:
                raise MalformedResponse(f"Authenticator returned status 0x{data[0]:02x}")
            data = data[1:]
        try:
            decoded = cbor2.loads(data)
        except (cbor2.CBORDecodeError, ValueError, EOFError) as exc:
            raise MalformedResponse("Authenticator response is not valid CBOR") from exc
    else:
        raise MalformedResponse(f"Unsupported response type: {type(raw).__name__}")

    if not isinstance(decoded, Mapping):
        raise MalformedResponse("Authenticator response must be a CBOR map")
    if not all(isinstance(key, int) and not isinstance(key, bool) for key in decoded):
        raise MalformedResponse("Authenticator response keys must be integers")
    return dict(decoded)


def _require_fields(mapping: Mapping[int, Any], kind: str) -> None:
    labels = _CTAP_FIELD_LABELS[kind]
    for index in _CTAP_REQUIRED_FIELDS[kind]:
        if mapping.get(index) is None:
            raise MalformedResponse(f"Missing field 0x{index:02x} ({labels[index]})")


def _require_bytes(value: Any, field_name: str) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise MalformedResponse(f"{field_name} must be a byte string")


def parse_authenticator_data(data: Any) -> AuthenticatorData:
    data = _require_bytes(data, "authData")
    if len(data) < _AUTH_DATA_MIN_LENGTH:
        raise MalformedResponse(
            f"authData is truncated ({len(data)} of at least {_AUTH_DATA_MIN_LENGTH} bytes)"
        )
    try:
        return AuthenticatorData(data)
    except (ValueError, TypeError, KeyError, IndexError, struct.error) as exc:
        raise MalformedResponse(f"authData could not be parsed: {exc}") from exc


def load_public_key(cose_key: Mapping[int, Any]):
    """Load a COSE public key, returning ``None`` for key types without SPKI form."""

    kty = cose_key.get(1)
    alg = cose_key.get(3)
    if not isinstance(alg, int) or isinstance(alg, bool):
        raise MalformedResponse("Credential public key has no algorithm")

    try:
        if kty == 2:
            curve_cls = _EC_CURVES.get(cose_key.get(-1))
            if curve_cls is None:
                raise MalformedResponse(f"Unsupported EC2 curve {cose_key.get(-1)!r}")
            curve = curve_cls()
            size = (curve.key_size + 7) // 8
            x = _require_bytes(cose_key.get(-2), "EC2 x coordinate")
            y = _require_bytes(cose_key.get(-3), "EC2 y coordinate")
            if len(x) != size or len(y) != size:
                raise MalformedResponse("EC2 coordinates have the wrong length")
            return ec.EllipticCurvePublicNumbers(
                int.from_bytes(x, "big"), int.from_bytes(y, "big"), curve
            ).public_key()
        if kty == 1:
            x = _require_bytes(cose_key.get(-2), "OKP public key")
            crv = cose_key.get(-1)
            if crv == 6:
                return ed25519.Ed25519PublicKey.from_public_bytes(x)
            if crv == 7:
                return ed448.Ed448PublicKey.from_public_bytes(x)
            raise MalformedResponse(f"Unsupported OKP curve {crv!r}")
        if kty == 3:
            n = _require_bytes(cose_key.get(-1), "RSA modulus")
            e = _require_bytes(cose_key.get(-2), "RSA exponent")
            return rsa.RSAPublicNumbers(
                int.from_bytes(e, "big"), int.from_bytes(n, "big")
            ).public_key()
    except ValueError as exc:
        raise MalformedResponse(f"Credential public key is invalid: {exc}") from exc

    if kty is None:
        raise MalformedResponse("Credential public key has no key type")
    return None


def parse_attestation_response(raw: ResponseInput) -> Tuple[str, AuthenticatorData, Dict[str, Any]]:
    """Validate a makeCredential response and return ``(fmt, authData, attStmt)``."""

    mapping = decode_response(raw)
    _require_fields(mapping, "makeCredentialResponse")

    fmt = mapping[1]
    if not isinstance(fmt, str) or not fmt:
        raise MalformedResponse("fmt must be a non-empty string")
    att_stmt = mapping.get(3) or {}
    if not isinstance(att_stmt, Mapping):
        raise MalformedResponse("attStmt must be a map")

    auth_data = parse_authenticator_data(mapping[2])
    credential_data = auth_data.credential_data
    if credential_data is None:
        raise MalformedResponse("authData carries no attested credential data")
    if not credential_data.credential_id:
        raise MalformedResponse("Attested credential ID is empty")
    if not credential_data.public_key:
        raise MalformedResponse("Attested credential public key is missing")
    load_public_key(credential_data.public_key)
    return fmt, auth_data, dict(att_stmt)


def parse_assertion_response(raw: ResponseInput) -> Dict[int, Any]:
    """Validate a getAssertion response and return its map with parsed authData."""

    mapping = decode_response(raw)
    _require_fields(mapping, "getAssertionResponse")
    mapping[2] = parse_authenticator_data(mapping[2])
    mapping[3] = _require_bytes(mapping[3], "signature")
    if not mapping[3]:
        raise MalformedResponse("signature is empty")
    for index, label in ((1, "credential"), (4, "user")):
        if mapping.get(index) is not None and not isinstance(mapping[index], Mapping):
            raise MalformedResponse(f"{label} must be a map")
    return mapping


def describe_authenticator_data(auth_data: AuthenticatorData) -> Dict[str, Any]:
    """Human-oriented breakdown of authenticator data for display."""

    flags = auth_data.flags
    details: Dict[str, Any] = {
        "rpIdHash": auth_data.rp_id_hash.hex(),
        "flags": {
            "value": int(flags),
            "userPresent": bool(flags & AuthenticatorData.FLAG.UP),
            "userVerified": bool(flags & AuthenticatorData.FLAG.UV),
            "backupEligibility": bool(flags & AuthenticatorData.FLAG.BE),
            "backupState": bool(flags & AuthenticatorData.FLAG.BS),
            "attestedCredentialDataIncluded": bool(flags & AuthenticatorData.FLAG.AT),
            "extensionDataIncluded": bool(flags & AuthenticatorData.FLAG.ED),
        },
        "signCount": auth_data.counter,
    }

    credential_data = auth_data.credential_data
    if credential_data is not None:
        details["attestedCredentialData"] = {
            "aaguid": str(credential_data.aaguid),
            "credentialId": websafe_encode(credential_data.credential_id),
            "publicKey": _json_safe(dict(credential_data.public_key)),
        }

    if auth_data.extensions:
        details["extensions"] = _json_safe(auth_data.extensions)
    return canonicalize(details)


def _zero_aaguid(auth_data: AuthenticatorData) -> bytes:
    data = bytearray(auth_data)
    data[_AAGUID_OFFSET : _AAGUID_OFFSET + _AAGUID_LENGTH] = b"\0" * _AAGUID_LENGTH
    return bytes(data)


@dataclass(frozen=True)
class PublicKeyCredential:
    """Result of a registration ceremony.

    ``raw_id`` is the credential ID exactly as the authenticator returned it.
    """

    raw_id: bytes
    client_data_json: bytes
    attestation_object: AttestationObject
    public_key_algorithm: int
    public_key: Optional[bytes] = None
    client_extension_results: Mapping[str, Any] = field(default_factory=dict)
    type: str = PUBLIC_KEY

    @property
    def id(self) -> str:
        return websafe_encode(self.raw_id)

    @property
    def authenticator_data(self) -> AuthenticatorData:
        return self.attestation_object.auth_data

    def to_dict(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "clientDataJSON": websafe_encode(self.client_data_json),
            "attestationObject": websafe_encode(bytes(self.attestation_object)),
            "authenticatorData": websafe_encode(bytes(self.authenticator_data)),
            "publicKeyAlgorithm": self.public_key_algorithm,
        }
        if self.public_key is not None:
            response["publicKey"] = websafe_encode(self.public_key)
        return canonicalize(
            {
                "id": self.id,
                "rawId": self.id,
                "type": self.type,
                "authenticatorAttachment": CROSS_PLATFORM,
                "response": response,
                "clientExtensionResults": _json_safe(self.client_extension_results),
            }
        )

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def describe(self) -> Dict[str, Any]:
        return canonicalize(
            {
                "fmt": self.attestation_object.fmt,
                "attStmt": _json_safe(self.attestation_object.att_stmt),
                "authData": describe_authenticator_data(self.authenticator_data),
            }
        )


@dataclass(frozen=True)
class AssertionCredential:
    """Result of an authentication ceremony."""

    raw_id: bytes
    client_data_json: bytes
    authenticator_data: AuthenticatorData
    signature: bytes
    user_handle: Optional[bytes] = None
    user: Optional[Mapping[str, Any]] = None
    number_of_credentials: Optional[int] = None
    client_extension_results: Mapping[str, Any] = field(default_factory=dict)
    type: str = PUBLIC_KEY

    @property
    def id(self) -> str:
        return websafe_encode(self.raw_id)

    def to_dict(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "clientDataJSON": websafe_encode(self.client_data_json),
            "authenticatorData": websafe_encode(bytes(self.authenticator_data)),
            "signature": websafe_encode(self.signature),
            "userHandle": (
                websafe_encode(self.user_handle) if self.user_handle is not None else None
            ),
        }
        return canonicalize(
            {
                "id": self.id,
                "rawId": self.id,
                "type": self.type,
                "authenticatorAttachment": CROSS_PLATFORM,
                "response": response,
                "clientExtensionResults": _json_safe(self.client_extension_results),
            }
        )

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def describe(self) -> Dict[str, Any]:
        return describe_authenticator_data(self.authenticator_data)


def materialize_attestation(
    raw_response: ResponseInput,
    client_data_json: bytes,
    *,
    attestation: AttestationConveyancePreference = AttestationConveyancePreference.NONE,
    extension_results: Optional[Mapping[str, Any]] = None,
) -> PublicKeyCredential:
    fmt, auth_data, att_stmt = parse_attestation_response(raw_response)
    credential_data = auth_data.credential_data

    auth_data_bytes = bytes(auth_data)
    if attestation == AttestationConveyancePreference.NONE:
        fmt, att_stmt = "none", {}
        auth_data_bytes = _zero_aaguid(auth_data)

    encoded = cbor2.dumps(
        {"fmt": fmt, "attStmt": att_stmt, "authData": auth_data_bytes}, canonical=True
    )

    key = load_public_key(credential_data.public_key)
    spki = None
    if key is not None:
        spki = key.public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )

    return PublicKeyCredential(
        raw_id=bytes(credential_data.credential_id),
        client_data_json=bytes(client_data_json),
        attestation_object=AttestationObject(encoded),
        public_key_algorithm=credential_data.public_key[3],
        public_key=spki,
        client_extension_results=dict(extension_results or {}),
    )


def materialize_assertion(
    raw_response: ResponseInput,
    client_data_json: bytes,
    *,
    credential_id: Optional[bytes] = None,
    extension_results: Optional[Mapping[str, Any]] = None,
) -> AssertionCredential:
    """Build an :class:`AssertionCredential`.

    ``credential_id`` is used when the authenticator omitted the credential, which it
    may do when the allow list held a single entry.
    """

    mapping = parse_assertion_response(raw_response)

    credential = mapping.get(1) or {}
    raw_id = credential.get("id", credential_id)
    if raw_id is None:
        raise MalformedResponse("Assertion does not identify its credential")
    raw_id = _require_bytes(raw_id, "credential.id")
    if not raw_id:
        raise MalformedResponse("Assertion credential ID is empty")

    user = mapping.get(4)
    user_handle = None
    if user is not None and user.get("id") is not None:
        user_handle = _require_bytes(user["id"], "user.id")

    return AssertionCredential(
        raw_id=raw_id,
        client_data_json=bytes(client_data_json),
        authenticator_data=mapping[2],
        signature=mapping[3],
        user_handle=user_handle,
        user=dict(user) if user is not None else None,
        number_of_credentials=mapping.get(5),
        client_extension_results=dict(extension_results or {}),
    )


def materialize(
    raw_response: ResponseInput,
    client_data_json: bytes,
    **kwargs,
) -> Union[PublicKeyCredential, AssertionCredential]:
    """Materialize either response kind, told apart by the type of field 0x01."""

    mapping = decode_response(raw_response)
    if isinstance(mapping.get(1), str):
        return materialize_attestation(mapping, client_data_json, **kwargs)
    return materialize_assertion(mapping, client_data_json, **kwargs)
