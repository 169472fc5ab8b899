"""CTAP2 session driver running one ceremony over one channel."""
from __future__ import annotations

import contextlib
import enum
import hashlib
import logging
import threading
from dataclasses import dataclass, field
from threading import Event
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from fido2.ctap import CtapError
from fido2.ctap2 import Ctap2, Info
from fido2.ctap2.extensions import (
    CredBlobExtension,
    CredPropsExtension,
    CredProtectExtension,
    HmacSecretExtension,
    LargeBlobExtension,
    MinPinLengthExtension,
)
from fido2.ctap2.pin import ClientPin, PinProtocol
from fido2.hid import STATUS
from fido2.webauthn import (
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialType,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .channel import Channel, ChannelDevice, Deadline
from .client_data import client_data_hash
from .config import ClientConfig
from .errors import (
    Busy,
    DeviceError,
    DeviceIneligible,
    MalformedResponse,
    PasskeyError,
    PinBlocked,
    PinInvalid,
    PinRequired,
    Timeout,
    UnsupportedAlgorithm,
    UserCancelled,
    UserVerificationUnavailable,
)
from .materializer import parse_assertion_response, parse_attestation_response
from .options import (
    CredentialCreationOptions,
    CredentialDescriptor,
    CredentialParameters,
    CredentialRequestOptions,
)

__all__ = [
    "CtapResult",
    "Ctap2SessionDriver",
    "PinBuffer",
    "SessionState",
    "default_extensions",
    "map_ctap_error",
]

logger = logging.getLogger(__name__)

ES256 = -7
PUBLIC_KEY = PublicKeyCredentialType.PUBLIC_KEY.value

_ERR = CtapError.ERR

# CTAP status codes referenced by value.
_ERR_TIMEOUT = 0x05
_ERR_CHANNEL_BUSY = 0x06
_ERR_UNSUPPORTED_EXTENSION = 0x16
_ERR_LARGE_BLOB_STORAGE_FULL = 0x18
_ERR_UV_BLOCKED = 0x3C
_ERR_UV_INVALID = 0x3F

_CANCELLED = frozenset({_ERR.KEEPALIVE_CANCEL, _ERR.OPERATION_DENIED})
_TIMED_OUT = frozenset({_ERR.ACTION_TIMEOUT, _ERR.USER_ACTION_TIMEOUT, _ERR_TIMEOUT})
_INELIGIBLE = frozenset(
    {
        _ERR.UNSUPPORTED_ALGORITHM,
        _ERR.UNSUPPORTED_OPTION,
        _ERR.KEY_STORE_FULL,
        _ERR.CREDENTIAL_EXCLUDED,
        _ERR.NO_CREDENTIALS,
        _ERR_UNSUPPORTED_EXTENSION,
        _ERR_LARGE_BLOB_STORAGE_FULL,
    }
)
_UV_FALLBACK = frozenset({_ERR_UV_BLOCKED, _ERR_UV_INVALID})

_UV_OPTIONS = ("uv", "clientPin", "bioEnroll")

# Extension inputs consumed by the python-fido2 processors.
_PROCESSED_EXTENSIONS = frozenset(
    {
        "prf",
        "hmacCreateSecret",
        "hmacGetSecret",
        "largeBlob",
        "credProps",
        "credentialProtectionPolicy",
        "enforceCredentialProtectionPolicy",
        "minPinLength",
        "credBlob",
        "getCredBlob",
    }
)


class SessionState(enum.Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    PIN_NEGOTIATED = "pin_negotiated"
    COMMAND_IN_FLIGHT = "command_in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    SessionState.IDLE: {SessionState.CONNECTED, SessionState.FAILED},
    SessionState.CONNECTED: {
        SessionState.PIN_NEGOTIATED,
        SessionState.COMMAND_IN_FLIGHT,
        SessionState.FAILED,
    },
    SessionState.PIN_NEGOTIATED: {SessionState.COMMAND_IN_FLIGHT, SessionState.FAILED},
    SessionState.COMMAND_IN_FLIGHT: {SessionState.COMPLETED, SessionState.FAILED},
    SessionState.COMPLETED: set(),
    SessionState.FAILED: set(),
}

_TERMINAL = (SessionState.COMPLETED, SessionState.FAILED)

_active_channels: set = set()
_active_lock = threading.Lock()


def map_ctap_error(exc: CtapError) -> PasskeyError:
    """Translate a CTAP status into the caller facing error taxonomy."""

    code = int(exc.code)
    if code in _CANCELLED:
        return UserCancelled("Operation was cancelled or denied on the authenticator")
    if code in _TIMED_OUT:
        return Timeout("Authenticator timed out waiting for the user")
    if code in _INELIGIBLE:
        return DeviceIneligible(f"Authenticator cannot satisfy the request ({exc})", code)
    if code == _ERR_CHANNEL_BUSY:
        return Busy("Authenticator is busy")
    if code == _ERR.PUAT_REQUIRED:
        return PinRequired("Authenticator requires user verification with a PIN")
    return DeviceError(code)


def default_extensions() -> list:
    return [
        HmacSecretExtension(),
        LargeBlobExtension(),
        CredBlobExtension(),
        CredPropsExtension(),
        CredProtectExtension(),
        MinPinLengthExtension(),
    ]


def _wipe(buffer: bytearray) -> None:
    for index in range(len(buffer)):
        buffer[index] = 0


class PinBuffer:
    """Mutable holder for a PIN, zeroed once the ceremony is over.

    A ``bytearray`` argument is used in place and wiped along with the buffer. Text is
    encoded as UTF-8 one character at a time when given as a sequence of characters.
    """

    def __init__(self, pin: Union[str, bytes, bytearray, Sequence[str]]):
        if isinstance(pin, bytearray):
            self._buffer = pin
        elif isinstance(pin, (bytes, memoryview)):
            self._buffer = bytearray(pin)
        elif isinstance(pin, str):
            self._buffer = bytearray(pin.encode("utf-8"))
        else:
            self._buffer = bytearray()
            for char in pin:
                self._buffer.extend(char.encode("utf-8"))
        if not self._buffer:
            raise PinRequired("PIN must not be empty")

    @classmethod
    def wrap(cls, pin) -> Optional["PinBuffer"]:
        if pin is None or isinstance(pin, cls):
            return pin
        return cls(pin)

    def __len__(self):
        return len(self._buffer)

    def __repr__(self):
        return "PinBuffer(<redacted>)"

    def digest(self) -> bytes:
        """Left 16 bytes of SHA-256(PIN), as sent in pinHashEnc."""
        return hashlib.sha256(self._buffer).digest()[:16]

    def wipe(self) -> None:
        _wipe(self._buffer)


@dataclass
class CtapResult:
    """Integer-keyed CTAP response map plus client extension outputs."""

    response: Dict[int, Any]
    client_extension_results: Dict[str, Any] = field(default_factory=dict)


def _claim_channel(channel: Channel) -> None:
    with _active_lock:
        if id(channel) in _active_channels:
            raise Busy("A session is already active on this channel")
        _active_channels.add(id(channel))


def _release_channel(channel: Channel) -> None:
    with _active_lock:
        _active_channels.discard(id(channel))


class Ctap2SessionDriver:
    """Runs a single makeCredential or getAssertion ceremony.

    The driver walks ``IDLE -> CONNECTED -> (PIN_NEGOTIATED) -> COMMAND_IN_FLIGHT``
    and ends in ``COMPLETED`` or ``FAILED``. Use it as a context manager; leaving the
    block closes the channel and wipes the PIN/UV token.
    """

    def __init__(
        self,
        channel: Channel,
        *,
        config: Optional[ClientConfig] = None,
        event: Optional[Event] = None,
        timeout_ms: Optional[int] = None,
        extensions: Optional[Iterable[Any]] = None,
        on_user_presence: Optional[Callable[[], None]] = None,
    ):
        self.channel = channel
        self.config = config or ClientConfig()
        self.timeout_ms = timeout_ms or self.config.timeout_ms
        self._event = event or Event()
        self._extensions = (
            list(extensions) if extensions is not None else default_extensions()
        )
        self._on_user_presence = on_user_presence

        self._state = SessionState.IDLE
        self.history: List[SessionState] = [SessionState.IDLE]
        self._device: Optional[ChannelDevice] = None
        self._ctap: Optional[Ctap2] = None
        self._pin_protocol: Optional[PinProtocol] = None
        self._pin_token: Optional[bytearray] = None
        self._claimed = False
        self._closed = False

    def __repr__(self):
        return f"Ctap2SessionDriver({self.channel!r}, state={self._state.value})"

    def __enter__(self):
        try:
            self.open()
        except Exception:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def info(self) -> Info:
        if self._ctap is None:
            raise RuntimeError("Session is not connected")
        return self._ctap.info

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Illegal session transition {self._state.value} -> {new_state.value}"
            )
        logger.debug("Session %s -> %s", self._state.value, new_state.value)
        self._state = new_state
        self.history.append(new_state)

    @contextlib.contextmanager
    def _operation(self):
        try:
            yield
        except Exception:
            if self._state not in _TERMINAL:
                self._transition(SessionState.FAILED)
            raise

    @contextlib.contextmanager
    def _ctap_errors(self):
        try:
            yield
        except CtapError as exc:
            logger.debug("Authenticator returned %s", exc)
            raise map_ctap_error(exc) from exc
        except (ValueError, TypeError, KeyError) as exc:
            raise MalformedResponse(f"Authenticator response rejected: {exc}") from exc

    def open(self) -> "Ctap2SessionDriver":
        """Select the FIDO applet and read the authenticator info."""

        if self._state is not SessionState.IDLE or self._closed:
            raise RuntimeError("Session can only be opened once")
        _claim_channel(self.channel)
        self._claimed = True

        deadline = Deadline(self.timeout_ms)
        with self._operation(), self._ctap_errors():
            self._device = ChannelDevice(
                self.channel,
                deadline,
                event=self._event,
                use_ext_apdu=self.config.extended_apdu,
            )
            self._ctap = Ctap2(self._device, strict_cbor=self.config.strict_cbor)

        info = self._ctap.info
        for protocol_cls in ClientPin.PROTOCOLS:
            if protocol_cls.VERSION in info.pin_uv_protocols:
                self._pin_protocol = protocol_cls()
                break
        self._transition(SessionState.CONNECTED)
        logger.info(
            "Connected to authenticator %s (versions %s)",
            info.aaguid,
            ", ".join(info.versions),
        )
        return self

    def close(self) -> None:
        """Wipe the token and release the channel. Safe to call more than once."""

        if self._pin_token is not None:
            _wipe(self._pin_token)
            self._pin_token = None
        self._closed = True
        if not self._claimed:
            return
        try:
            if self._device is not None:
                self._device.close()
            else:
                self.channel.close()
        finally:
            _release_channel(self.channel)
            self._claimed = False
            logger.debug("Session closed in state %s", self._state.value)

    def _require_connected(self) -> None:
        if self._closed or self._state is not SessionState.CONNECTED:
            raise RuntimeError(
                f"A command needs a connected session, not {self._state.value}"
            )

    def _on_keepalive(self, status) -> None:
        if status == STATUS.UPNEEDED:
            logger.info("Waiting for user presence on the authenticator")
            if self._on_user_presence is not None:
                self._on_user_presence()

    def _select_algorithms(
        self, params: Sequence[CredentialParameters]
    ) -> List[CredentialParameters]:
        advertised = self.info.algorithms or [{"type": PUBLIC_KEY, "alg": ES256}]
        supported = [
            entry.get("alg")
            for entry in advertised
            if entry.get("type", PUBLIC_KEY) == PUBLIC_KEY
        ]
        selected = [param for param in params if param.alg in supported]
        if not selected:
            raise UnsupportedAlgorithm(
                "None of the requested algorithms is supported by the authenticator",
                requested=[param.alg for param in params],
                supported=supported,
            )
        return selected

    def _use_resident_key(self, requirement: ResidentKeyRequirement) -> bool:
        rk_supported = bool(self.info.options.get("rk"))
        if requirement == ResidentKeyRequirement.REQUIRED:
            if not rk_supported:
                raise DeviceIneligible(
                    "Authenticator cannot store discoverable credentials"
                )
            return True
        return requirement == ResidentKeyRequirement.PREFERRED and rk_supported

    def _should_use_uv(
        self,
        user_verification: UserVerificationRequirement,
        permissions: ClientPin.PERMISSION,
        pin_supplied: bool,
    ) -> bool:
        options = self.info.options
        uv_configured = any(options.get(k) for k in _UV_OPTIONS)
        mc = permissions & ClientPin.PERMISSION.MAKE_CREDENTIAL
        additional = permissions & ~(
            ClientPin.PERMISSION.MAKE_CREDENTIAL | ClientPin.PERMISSION.GET_ASSERTION
        )

        if user_verification == UserVerificationRequirement.REQUIRED or options.get(
            "alwaysUv"
        ):
            if not uv_configured:
                raise UserVerificationUnavailable(
                    "User verification required but not configured on the authenticator"
                )
            return True
        if not uv_configured:
            return False
        if mc and not options.get("makeCredUvNotRqd"):
            return True
        if additional:
            return True
        if user_verification == UserVerificationRequirement.PREFERRED:
            if options.get("uv") or pin_supplied:
                return True
            logger.info("No PIN supplied, continuing without user verification")
        return False

    def _client_pin(self) -> ClientPin:
        if self._pin_protocol is None:
            raise UserVerificationUnavailable("Authenticator offers no usable PIN/UV protocol")
        try:
            return ClientPin(self._ctap, self._pin_protocol)
        except ValueError as exc:
            raise UserVerificationUnavailable(str(exc)) from exc

    def _authorize(
        self, permissions: ClientPin.PERMISSION, rp_id: str, pin: Optional[PinBuffer]
    ) -> bool:
        """Acquire a pinUvAuthToken, or return True to request the ``uv`` option."""

        options = self.info.options
        if options.get("uv"):
            if ClientPin.is_token_supported(self.info):
                client_pin = self._client_pin()
                logger.info("Requesting built-in user verification")
                try:
                    token = client_pin.get_uv_token(
                        permissions,
                        rp_id,
                        event=self._event,
                        on_keepalive=self._on_keepalive,
                    )
                except CtapError as exc:
                    if int(exc.code) not in _UV_FALLBACK:
                        raise map_ctap_error(exc) from exc
                    if not (options.get("clientPin") and pin is not None):
                        raise UserVerificationUnavailable(
                            "Built-in user verification failed"
                        ) from exc
                    logger.warning("Built-in user verification failed, falling back to PIN")
                else:
                    self._set_token(bytearray(token))
                    return False
            else:
                return True

        if options.get("clientPin"):
            if pin is None:
                raise PinRequired()
            self._set_token(self._get_pin_token(pin, permissions, rp_id))
            return False
        raise UserVerificationUnavailable("No user verification method is configured")

    def _set_token(self, token: bytearray) -> None:
        self._pin_token = token
        self._transition(SessionState.PIN_NEGOTIATED)

    def _get_pin_token(
        self, pin: PinBuffer, permissions: ClientPin.PERMISSION, rp_id: str
    ) -> bytearray:
        protocol = self._pin_protocol
        if protocol is None:
            raise UserVerificationUnavailable("Authenticator offers no usable PIN protocol")

        logger.info("Negotiating PIN token using protocol %d", protocol.VERSION)
        try:
            resp = self._ctap.client_pin(protocol.VERSION, ClientPin.CMD.GET_KEY_AGREEMENT)
            key_agreement, shared_secret = protocol.encapsulate(
                resp[ClientPin.RESULT.KEY_AGREEMENT]
            )
            pin_hash_enc = protocol.encrypt(shared_secret, pin.digest())
            if ClientPin.is_token_supported(self.info):
                resp = self._ctap.client_pin(
                    protocol.VERSION,
                    ClientPin.CMD.GET_TOKEN_USING_PIN,
                    key_agreement=key_agreement,
                    pin_hash_enc=pin_hash_enc,
                    permissions=permissions,
                    permissions_rpid=rp_id,
                )
            else:
                resp = self._ctap.client_pin(
                    protocol.VERSION,
                    ClientPin.CMD.GET_TOKEN_USING_PIN_LEGACY,
                    key_agreement=key_agreement,
                    pin_hash_enc=pin_hash_enc,
                )
        except CtapError as exc:
            raise self._pin_failure(exc, protocol) from exc

        with self._ctap_errors():
            token = protocol.validate_token(
                protocol.decrypt(shared_secret, resp[ClientPin.RESULT.PIN_UV_TOKEN])
            )
        return bytearray(token)

    def _pin_retries(self, protocol: PinProtocol) -> Optional[int]:
        try:
            resp = self._ctap.client_pin(protocol.VERSION, ClientPin.CMD.GET_PIN_RETRIES)
        except CtapError as exc:
            logger.warning("Could not read PIN retries: %s", exc)
            return None
        return resp.get(ClientPin.RESULT.PIN_RETRIES)

    def _pin_failure(self, exc: CtapError, protocol: PinProtocol) -> PasskeyError:
        code = int(exc.code)
        if code == _ERR.PIN_INVALID:
            retries = self._pin_retries(protocol)
            logger.warning("PIN rejected, %s attempt(s) remaining", retries)
            if retries == 0:
                return PinBlocked(0)
            return PinInvalid(retries)
        if code == _ERR.PIN_BLOCKED:
            return PinBlocked(0)
        if code == _ERR.PIN_AUTH_BLOCKED:
            return PinBlocked(None, power_cycle_required=True)
        if code == _ERR.PIN_NOT_SET:
            return UserVerificationUnavailable("No PIN is set on the authenticator")
        if code == _ERR.PIN_POLICY_VIOLATION:
            return PinInvalid(None)
        return map_ctap_error(exc)

    def _passthrough_extensions(self, extensions: Dict[str, Any]) -> Dict[str, Any]:
        advertised = self.info.extensions or []
        inputs = {}
        for name, value in extensions.items():
            if name in _PROCESSED_EXTENSIONS:
                continue
            if name in advertised:
                inputs[name] = value
            else:
                logger.debug("Authenticator does not support extension %s", name)
        return inputs

    def _filter_descriptors(
        self, descriptors: Sequence[CredentialDescriptor]
    ) -> List[CredentialDescriptor]:
        max_length = self.info.max_cred_id_length
        if not max_length:
            return list(descriptors)
        kept = [cred for cred in descriptors if len(cred.id) <= max_length]
        if len(kept) != len(descriptors):
            logger.debug("Dropped %d over-long credential IDs", len(descriptors) - len(kept))
        return kept

    def _auth_params(
        self, client_data_hash_value: bytes
    ) -> Tuple[Optional[bytes], Optional[int]]:
        if self._pin_token is None:
            return None, None
        return (
            self._pin_protocol.authenticate(self._pin_token, client_data_hash_value),
            self._pin_protocol.VERSION,
        )

    def make_credential(
        self,
        options: CredentialCreationOptions,
        client_data: bytes,
        *,
        rp_id: Optional[str] = None,
        pin=None,
    ) -> CtapResult:
        """Run ``authenticatorMakeCredential`` and return the validated response."""

        pin = PinBuffer.wrap(pin)
        try:
            self._require_connected()
            with self._operation():
                return self._make_credential(options, client_data, rp_id or options.rp.id, pin)
        finally:
            if pin is not None:
                pin.wipe()

    def _make_credential(self, options, client_data, rp_id, pin) -> CtapResult:
        key_params = self._select_algorithms(options.pub_key_cred_params)
        rk = self._use_resident_key(options.resident_key)

        webauthn_options = options.to_webauthn()
        processors = []
        for ext in self._extensions:
            try:
                processor = ext.make_credential(
                    self._ctap, webauthn_options, self._pin_protocol
                )
            except ValueError as exc:
                raise DeviceIneligible(f"Extension cannot be used: {exc}") from exc
            if processor is not None:
                processors.append(processor)

        permissions = ClientPin.PERMISSION.MAKE_CREDENTIAL
        for processor in processors:
            permissions |= processor.permissions

        internal_uv = False
        if self._should_use_uv(options.user_verification, permissions, pin is not None):
            internal_uv = self._authorize(permissions, rp_id, pin)

        with self._ctap_errors():
            extension_inputs: Dict[str, Any] = {}
            for processor in processors:
                inputs = processor.prepare_inputs(self._pin_token)
                if inputs:
                    extension_inputs.update(inputs)
        extension_inputs.update(self._passthrough_extensions(dict(options.extensions)))

        ctap_options = {}
        if rk:
            ctap_options["rk"] = True
        if internal_uv:
            ctap_options["uv"] = True

        digest = client_data_hash(client_data)
        pin_uv_param, pin_uv_protocol = self._auth_params(digest)
        exclude_list = [
            cred.to_ctap() for cred in self._filter_descriptors(options.exclude_credentials)
        ]

        self._transition(SessionState.COMMAND_IN_FLIGHT)
        logger.info(
            "Sending makeCredential for %s (rk=%s, uv=%s)",
            rp_id,
            rk,
            pin_uv_param is not None or internal_uv,
        )
        with self._ctap_errors():
            response = self._ctap.make_credential(
                digest,
                dict(options.rp.to_ctap(), id=rp_id),
                options.user.to_ctap(),
                [param.to_ctap() for param in key_params],
                exclude_list or None,
                extension_inputs or None,
                ctap_options or None,
                pin_uv_param,
                pin_uv_protocol,
                event=self._event,
                on_keepalive=self._on_keepalive,
            )

        raw: Dict[int, Any] = {
            1: response.fmt,
            2: bytes(response.auth_data),
            3: dict(response.att_stmt or {}),
        }
        if response.large_blob_key:
            raw[5] = response.large_blob_key
        parse_attestation_response(raw)

        outputs: Dict[str, Any] = {}
        with self._ctap_errors():
            for processor in processors:
                result = processor.prepare_outputs(response, self._pin_token)
                if result:
                    outputs.update(result)

        self._transition(SessionState.COMPLETED)
        logger.info("Credential created for %s", rp_id)
        return CtapResult(raw, outputs)

    def get_assertions(
        self,
        options: CredentialRequestOptions,
        client_data: bytes,
        *,
        rp_id: Optional[str] = None,
        pin=None,
    ) -> List[CtapResult]:
        """Run ``authenticatorGetAssertion`` and collect every matching assertion."""

        pin = PinBuffer.wrap(pin)
        rp_id = rp_id or options.rp_id
        try:
            self._require_connected()
            if not rp_id:
                raise RuntimeError("An RP ID is needed for getAssertion")
            with self._operation():
                return self._get_assertions(options, client_data, rp_id, pin)
        finally:
            if pin is not None:
                pin.wipe()

    def _get_assertions(self, options, client_data, rp_id, pin) -> List[CtapResult]:
        allow_list = self._filter_descriptors(options.allow_credentials)
        if options.allow_credentials and not allow_list:
            raise DeviceIneligible(
                "No usable credentials in allowCredentials", int(_ERR.NO_CREDENTIALS)
            )

        selected = None
        if len(allow_list) == 1:
            selected = PublicKeyCredentialDescriptor(
                type=PublicKeyCredentialType.PUBLIC_KEY, id=allow_list[0].id
            )

        webauthn_options = options.to_webauthn(rp_id)
        processors = []
        for ext in self._extensions:
            try:
                processor = ext.get_assertion(
                    self._ctap, webauthn_options, self._pin_protocol
                )
            except ValueError as exc:
                raise DeviceIneligible(f"Extension cannot be used: {exc}") from exc
            if processor is not None:
                processors.append(processor)

        permissions = ClientPin.PERMISSION.GET_ASSERTION
        for processor in processors:
            permissions |= processor.permissions

        internal_uv = False
        if self._should_use_uv(options.user_verification, permissions, pin is not None):
            internal_uv = self._authorize(permissions, rp_id, pin)

        with self._ctap_errors():
            extension_inputs: Dict[str, Any] = {}
            for processor in processors:
                inputs = processor.prepare_inputs(selected, self._pin_token)
                if inputs:
                    extension_inputs.update(inputs)
        extension_inputs.update(self._passthrough_extensions(dict(options.extensions)))

        digest = client_data_hash(client_data)
        pin_uv_param, pin_uv_protocol = self._auth_params(digest)

        self._transition(SessionState.COMMAND_IN_FLIGHT)
        logger.info(
            "Sending getAssertion for %s (%d allowed credentials)", rp_id, len(allow_list)
        )
        with self._ctap_errors():
            responses = self._ctap.get_assertions(
                rp_id,
                digest,
                [cred.to_ctap() for cred in allow_list] or None,
                extension_inputs or None,
                {"uv": True} if internal_uv else None,
                pin_uv_param,
                pin_uv_protocol,
                event=self._event,
                on_keepalive=self._on_keepalive,
            )

        results = []
        for assertion in responses:
            raw: Dict[int, Any] = {
                2: bytes(assertion.auth_data),
                3: assertion.signature,
            }
            if assertion.credential is not None:
                raw[1] = dict(assertion.credential)
            elif selected is not None:
                raw[1] = {"type": PUBLIC_KEY, "id": selected.id}
            if assertion.user is not None:
                raw[4] = dict(assertion.user)
            if assertion.number_of_credentials is not None:
                raw[5] = assertion.number_of_credentials
            parse_assertion_response(raw)

            outputs: Dict[str, Any] = {}
            with self._ctap_errors():
                for processor in processors:
                    result = processor.prepare_outputs(assertion, self._pin_token)
                    if result:
                        outputs.update(result)
            results.append(CtapResult(raw, outputs))

        self._transition(SessionState.COMPLETED)
        logger.info("Received %d assertion(s) for %s", len(results), rp_id)
        return results
