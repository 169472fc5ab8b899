"""Normalization of declarative WebAuthn option descriptions."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from fido2.utils import websafe_encode
from fido2.webauthn import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialCreationOptions,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialParameters,
    PublicKeyCredentialRequestOptions,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialType,
    PublicKeyCredentialUserEntity,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .challenge import decode_b64
from .config import ClientConfig
from .errors import InvalidEntity, InvalidOptions, UnsupportedAlgorithm

__all__ = [
    "AuthenticatorSelection",
    "CredentialCreationOptions",
    "CredentialDescriptor",
    "CredentialParameters",
    "CredentialRequestOptions",
    "RelyingPartyEntity",
    "UserEntity",
    "normalize_creation_options",
    "normalize_request_options",
]

logger = logging.getLogger(__name__)

PUBLIC_KEY = PublicKeyCredentialType.PUBLIC_KEY.value
MAX_USER_ID_LENGTH = 64

_ALLOWED_ATTESTATION = (
    AttestationConveyancePreference.NONE,
    AttestationConveyancePreference.INDIRECT,
    AttestationConveyancePreference.DIRECT,
)


@dataclass(frozen=True)
class RelyingPartyEntity:
    id: str
    name: str

    def to_ctap(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class UserEntity:
    id: bytes
    name: str
    display_name: str

    def to_ctap(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "displayName": self.display_name}


@dataclass(frozen=True)
class CredentialParameters:
    alg: int
    type: str = PUBLIC_KEY

    def to_ctap(self) -> Dict[str, Any]:
        return {"alg": self.alg, "type": self.type}


@dataclass(frozen=True)
class CredentialDescriptor:
    id: bytes
    type: str = PUBLIC_KEY
    transports: Optional[Tuple[str, ...]] = None

    def to_ctap(self) -> Dict[str, Any]:
        descriptor: Dict[str, Any] = {"id": self.id, "type": self.type}
        if self.transports:
            descriptor["transports"] = list(self.transports)
        return descriptor


@dataclass(frozen=True)
class AuthenticatorSelection:
    resident_key: ResidentKeyRequirement
    user_verification: UserVerificationRequirement


@dataclass(frozen=True)
class CredentialCreationOptions:
    """Validated options for ``authenticatorMakeCredential``."""

    rp: RelyingPartyEntity
    user: UserEntity
    challenge: bytes
    pub_key_cred_params: Tuple[CredentialParameters, ...]
    authenticator_selection: AuthenticatorSelection
    extensions: Mapping[str, Any] = field(default_factory=dict)
    timeout: Optional[int] = None
    attestation: AttestationConveyancePreference = AttestationConveyancePreference.NONE
    exclude_credentials: Tuple[CredentialDescriptor, ...] = ()

    @property
    def user_verification(self) -> UserVerificationRequirement:
        return self.authenticator_selection.user_verification

    @property
    def resident_key(self) -> ResidentKeyRequirement:
        return self.authenticator_selection.resident_key

    @property
    def algorithms(self) -> Tuple[int, ...]:
        return tuple(param.alg for param in self.pub_key_cred_params)

    def to_webauthn(self) -> PublicKeyCredentialCreationOptions:
        """Return the python-fido2 representation used by CTAP2 extension processors."""

        return PublicKeyCredentialCreationOptions(
            rp=PublicKeyCredentialRpEntity(name=self.rp.name, id=self.rp.id),
            user=PublicKeyCredentialUserEntity(
                name=self.user.name,
                id=self.user.id,
                display_name=self.user.display_name,
            ),
            challenge=self.challenge,
            pub_key_cred_params=[
                PublicKeyCredentialParameters(
                    type=PublicKeyCredentialType(param.type), alg=param.alg
                )
                for param in self.pub_key_cred_params
            ],
            timeout=self.timeout,
            exclude_credentials=[
                PublicKeyCredentialDescriptor(
                    type=PublicKeyCredentialType(cred.type), id=cred.id
                )
                for cred in self.exclude_credentials
            ]
            or None,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=self.resident_key,
                user_verification=self.user_verification,
            ),
            attestation=self.attestation,
            extensions=_extensions_for_webauthn(self.extensions),
        )


@dataclass(frozen=True)
class CredentialRequestOptions:
    """Validated options for ``authenticatorGetAssertion``."""

    challenge: bytes
    rp_id: Optional[str]
    user_verification: UserVerificationRequirement
    extensions: Mapping[str, Any] = field(default_factory=dict)
    timeout: Optional[int] = None
    allow_credentials: Tuple[CredentialDescriptor, ...] = ()

    def to_webauthn(self, rp_id: Optional[str] = None) -> PublicKeyCredentialRequestOptions:
        return PublicKeyCredentialRequestOptions(
            challenge=self.challenge,
            timeout=self.timeout,
            rp_id=rp_id or self.rp_id,
            allow_credentials=[
                PublicKeyCredentialDescriptor(
                    type=PublicKeyCredentialType(cred.type), id=cred.id
                )
                for cred in self.allow_credentials
            ]
            or None,
            user_verification=self.user_verification,
            extensions=_extensions_for_webauthn(self.extensions),
        )


def _require_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if isinstance(value, Mapping):
        return value
    raise InvalidOptions(f"{field_name} must be an object.")


def _ensure_text(value: Any, field_name: str, *, error=InvalidOptions) -> str:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped:
            return stripped
    raise error(f"{field_name} must be a non-empty string.")


def _ensure_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise InvalidOptions(f"{field_name} must be an integer, not a boolean.")
    if isinstance(value, int):
        return value
    raise InvalidOptions(f"{field_name} must be an integer value.")


def _decode_binary_value(value: Any, field_name: str, *, error=InvalidOptions) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return decode_b64(value)
        except ValueError as exc:
            raise error(f"{field_name} is not valid base64.") from exc
    raise error(f"{field_name} must be a byte string or base64 text.")


def _parse_requirement(value: Any, enum_cls, default, field_name: str):
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            parsed = enum_cls(value.strip().lower())
        except ValueError:
            parsed = None
        # python-fido2 maps unknown values to None instead of raising.
        if parsed is not None:
            return parsed
    choices = ", ".join(member.value for member in enum_cls)
    raise InvalidOptions(f"{field_name} must be one of {choices}.")


def _parse_timeout(value: Any) -> Optional[int]:
    if value is None:
        return None
    timeout = _ensure_int(value, "timeout")
    if timeout <= 0:
        raise InvalidOptions("timeout must be a positive number of milliseconds.")
    return timeout


def _parse_descriptors(value: Any, field_name: str) -> Tuple[CredentialDescriptor, ...]:
    if value is None:
        return ()
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        raise InvalidOptions(f"{field_name} must be a list.")

    descriptors: List[CredentialDescriptor] = []
    for index, entry in enumerate(value):
        entry_map = _require_mapping(entry, f"{field_name}[{index}]")
        cred_type = entry_map.get("type", PUBLIC_KEY)
        if cred_type != PUBLIC_KEY:
            logger.debug("Ignoring %s entry of type %r", field_name, cred_type)
            continue
        transports = entry_map.get("transports")
        descriptors.append(
            CredentialDescriptor(
                id=_decode_binary_value(entry_map.get("id"), f"{field_name}[{index}].id"),
                transports=tuple(transports) if transports else None,
            )
        )
    return tuple(descriptors)


def _parse_prf(value: Any, *, allow_by_credential: bool) -> Dict[str, Any]:
    prf = _require_mapping(value, "extensions.prf")
    unknown = set(prf) - ({"eval", "evalByCredential"} if allow_by_credential else {"eval"})
    if unknown:
        raise InvalidOptions(f"Unsupported prf members: {', '.join(sorted(unknown))}.")

    def _parse_values(values: Any, name: str) -> Dict[str, bytes]:
        values_map = _require_mapping(values, name)
        if "first" not in values_map:
            raise InvalidOptions(f"{name}.first is required.")
        extra = set(values_map) - {"first", "second"}
        if extra:
            raise InvalidOptions(f"Unsupported {name} members: {', '.join(sorted(extra))}.")
        parsed = {"first": _decode_binary_value(values_map["first"], f"{name}.first")}
        if values_map.get("second") is not None:
            parsed["second"] = _decode_binary_value(values_map["second"], f"{name}.second")
        return parsed

    result: Dict[str, Any] = {}
    if prf.get("eval") is not None:
        result["eval"] = _parse_values(prf["eval"], "extensions.prf.eval")
    if prf.get("evalByCredential") is not None:
        by_credential = _require_mapping(
            prf["evalByCredential"], "extensions.prf.evalByCredential"
        )
        result["evalByCredential"] = {
            key: _parse_values(entry, f"extensions.prf.evalByCredential.{key}")
            for key, entry in by_credential.items()
        }
    return result


def _parse_large_blob_create(value: Any) -> Dict[str, Any]:
    large_blob = _require_mapping(value, "extensions.largeBlob")
    if "read" in large_blob or "write" in large_blob:
        raise InvalidOptions("largeBlob read/write is not allowed during registration.")
    unknown = set(large_blob) - {"support"}
    if unknown:
        raise InvalidOptions(f"Unsupported largeBlob members: {', '.join(sorted(unknown))}.")
    result: Dict[str, Any] = {}
    if large_blob.get("support") is not None:
        support = large_blob["support"]
        if support not in ("required", "preferred"):
            raise InvalidOptions("largeBlob.support must be 'required' or 'preferred'.")
        result["support"] = support
    return result


def _parse_large_blob_request(value: Any) -> Dict[str, Any]:
    large_blob = _require_mapping(value, "extensions.largeBlob")
    unknown = set(large_blob) - {"read", "write"}
    if unknown:
        raise InvalidOptions(f"Unsupported largeBlob members: {', '.join(sorted(unknown))}.")
    has_read = large_blob.get("read") is not None
    has_write = large_blob.get("write") is not None
    if has_read == has_write:
        raise InvalidOptions("largeBlob requires exactly one of read or write.")
    if has_read:
        if not isinstance(large_blob["read"], bool):
            raise InvalidOptions("largeBlob.read must be a boolean.")
        return {"read": large_blob["read"]}
    return {"write": _decode_binary_value(large_blob["write"], "extensions.largeBlob.write")}


def _parse_extensions(value: Any, *, registration: bool) -> Dict[str, Any]:
    if value is None:
        return {}
    extensions = _require_mapping(value, "extensions")
    parsed: Dict[str, Any] = {}
    for name, params in extensions.items():
        if name == "prf":
            parsed[name] = _parse_prf(params, allow_by_credential=not registration)
        elif name == "largeBlob":
            parsed[name] = (
                _parse_large_blob_create(params)
                if registration
                else _parse_large_blob_request(params)
            )
        else:
            parsed[name] = params
    return parsed


def _json_ready(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return websafe_encode(bytes(value))
    if isinstance(value, Mapping):
        return {key: _json_ready(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_ready(item) for item in value]
    return value


def _extensions_for_webauthn(extensions: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    # python-fido2 extension processors read the WebAuthn JSON form.
    if not extensions:
        return None
    return _json_ready(extensions)


def _parse_challenge(value: Any) -> bytes:
    if value is None:
        raise InvalidOptions("challenge is required.")
    challenge = _decode_binary_value(value, "challenge")
    if not challenge:
        raise InvalidOptions("challenge must not be empty.")
    return challenge


def normalize_creation_options(
    description: Mapping[str, Any], *, config: Optional[ClientConfig] = None
) -> CredentialCreationOptions:
    """Validate a ``PublicKeyCredentialCreationOptions`` style mapping."""

    config = config or ClientConfig()
    description = _require_mapping(description, "options")

    rp_data = description.get("rp")
    if not isinstance(rp_data, Mapping):
        raise InvalidEntity("rp is required.")
    rp_id = _ensure_text(rp_data.get("id"), "rp.id", error=InvalidEntity)
    rp_name = rp_data.get("name") or rp_id
    if not isinstance(rp_name, str):
        raise InvalidEntity("rp.name must be a string.")

    user_data = description.get("user")
    if not isinstance(user_data, Mapping):
        raise InvalidEntity("user is required.")
    if user_data.get("id") is None:
        raise InvalidEntity("user.id is required.")
    user_id = _decode_binary_value(user_data["id"], "user.id", error=InvalidEntity)
    if not user_id or len(user_id) > MAX_USER_ID_LENGTH:
        raise InvalidEntity(f"user.id must be 1 to {MAX_USER_ID_LENGTH} bytes.")
    user_name = _ensure_text(user_data.get("name"), "user.name", error=InvalidEntity)
    display_name = user_data.get("displayName", user_name)
    if not isinstance(display_name, str):
        raise InvalidEntity("user.displayName must be a string.")

    raw_params = description.get("pubKeyCredParams")
    if not raw_params:
        raise UnsupportedAlgorithm("pubKeyCredParams must propose at least one algorithm.")
    if not isinstance(raw_params, Sequence) or isinstance(raw_params, (str, bytes)):
        raise InvalidOptions("pubKeyCredParams must be a list.")
    params: List[CredentialParameters] = []
    for index, entry in enumerate(raw_params):
        entry_map = _require_mapping(entry, f"pubKeyCredParams[{index}]")
        if entry_map.get("type", PUBLIC_KEY) != PUBLIC_KEY:
            continue
        alg = _ensure_int(entry_map.get("alg"), f"pubKeyCredParams[{index}].alg")
        if alg not in (param.alg for param in params):
            params.append(CredentialParameters(alg=alg))
    if not params:
        raise UnsupportedAlgorithm("No public-key algorithms were proposed.")

    selection = description.get("authenticatorSelection") or {}
    selection = _require_mapping(selection, "authenticatorSelection")
    resident_key_value = selection.get("residentKey")
    if resident_key_value is None and selection.get("requireResidentKey") is True:
        resident_key_value = ResidentKeyRequirement.REQUIRED
    authenticator_selection = AuthenticatorSelection(
        resident_key=_parse_requirement(
            resident_key_value,
            ResidentKeyRequirement,
            config.resident_key,
            "authenticatorSelection.residentKey",
        ),
        user_verification=_parse_requirement(
            selection.get("userVerification"),
            UserVerificationRequirement,
            config.create_user_verification,
            "authenticatorSelection.userVerification",
        ),
    )

    attestation = _parse_requirement(
        description.get("attestation"),
        AttestationConveyancePreference,
        AttestationConveyancePreference.NONE,
        "attestation",
    )
    if attestation not in _ALLOWED_ATTESTATION:
        raise InvalidOptions(
            f"attestation {description.get('attestation')!r} is not supported."
        )

    return CredentialCreationOptions(
        rp=RelyingPartyEntity(id=rp_id, name=rp_name),
        user=UserEntity(id=user_id, name=user_name, display_name=display_name),
        challenge=_parse_challenge(description.get("challenge")),
        pub_key_cred_params=tuple(params),
        authenticator_selection=authenticator_selection,
        extensions=_parse_extensions(description.get("extensions"), registration=True),
        timeout=_parse_timeout(description.get("timeout")),
        attestation=attestation,
        exclude_credentials=_parse_descriptors(
            description.get("excludeCredentials"), "excludeCredentials"
        ),
    )


def normalize_request_options(
    description: Mapping[str, Any], *, config: Optional[ClientConfig] = None
) -> CredentialRequestOptions:
    """Validate a ``PublicKeyCredentialRequestOptions`` style mapping."""

    config = config or ClientConfig()
    description = _require_mapping(description, "options")

    rp_id = description.get("rpId")
    if rp_id is not None:
        rp_id = _ensure_text(rp_id, "rpId", error=InvalidEntity)

    return CredentialRequestOptions(
        challenge=_parse_challenge(description.get("challenge")),
        rp_id=rp_id,
        user_verification=_parse_requirement(
            description.get("userVerification"),
            UserVerificationRequirement,
            config.get_user_verification,
            "userVerification",
        ),
        extensions=_parse_extensions(description.get("extensions"), registration=False),
        timeout=_parse_timeout(description.get("timeout")),
        allow_credentials=_parse_descriptors(
            description.get("allowCredentials"), "allowCredentials"
        ),
    )
