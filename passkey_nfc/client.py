"""Caller-facing WebAuthn client over an NFC channel."""
from __future__ import annotations

import concurrent.futures
import logging
import threading
from threading import Event
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse

from fido2.rpid import verify_rp_id
from fido2.utils import websafe_encode

from .channel import Channel
from .client_data import TYPE_CREATE, TYPE_GET, build_client_data
from .config import ClientConfig
from .errors import Busy, InvalidEntity
from .materializer import (
    AssertionCredential,
    PublicKeyCredential,
    materialize_assertion,
    materialize_attestation,
)
from .options import (
    CredentialCreationOptions,
    CredentialRequestOptions,
    normalize_creation_options,
    normalize_request_options,
)
from .session import Ctap2SessionDriver, PinBuffer

__all__ = [
    "ChannelDispatcher",
    "PasskeyClient",
    "create_credential",
    "get_assertion",
    "get_assertions",
]

logger = logging.getLogger(__name__)

CreationInput = Union[CredentialCreationOptions, Mapping[str, Any]]
RequestInput = Union[CredentialRequestOptions, Mapping[str, Any]]


class PasskeyClient:
    """Registers and authenticates passkeys for a single web origin.

    Options are validated and the client data is built before the channel is used.
    Each call runs one session; the channel is closed when the call returns.
    """

    def __init__(
        self,
        origin: str,
        config: Optional[ClientConfig] = None,
        *,
        extensions: Optional[Iterable[Any]] = None,
        on_user_presence: Optional[Callable[[], None]] = None,
    ):
        parsed = urlparse(origin or "")
        if not parsed.scheme or not parsed.hostname:
            raise ValueError(f"origin must be an absolute URL, got {origin!r}")
        self.origin = origin
        self.config = config or ClientConfig()
        self._scheme = parsed.scheme
        self._host = parsed.hostname
        self._extensions = list(extensions) if extensions is not None else None
        self._on_user_presence = on_user_presence

    def __repr__(self):
        return f"PasskeyClient({self.origin!r})"

    def _verify_rp_id(self, rp_id: str, rp_id_host: Optional[str]) -> None:
        origin = self.origin if rp_id_host is None else f"{self._scheme}://{rp_id_host}"
        if not verify_rp_id(rp_id, origin):
            raise InvalidEntity(f"RP ID {rp_id!r} is not valid for origin {origin}")

    def _driver(self, channel: Channel, timeout: Optional[int], event: Optional[Event]):
        return Ctap2SessionDriver(
            channel,
            config=self.config,
            event=event,
            timeout_ms=timeout,
            extensions=self._extensions,
            on_user_presence=self._on_user_presence,
        )

    def create_credential(
        self,
        channel: Channel,
        options: CreationInput,
        rp_id_host: Optional[str] = None,
        pin=None,
        event: Optional[Event] = None,
    ) -> PublicKeyCredential:
        """Create a credential on the authenticator reachable through ``channel``.

        A ``bytearray`` PIN is wiped before this returns, whatever the outcome.
        """

        pin = PinBuffer.wrap(pin)
        try:
            return self._create(channel, options, rp_id_host, pin, event)
        finally:
            if pin is not None:
                pin.wipe()

    def _create(self, channel, options, rp_id_host, pin, event) -> PublicKeyCredential:
        if not isinstance(options, CredentialCreationOptions):
            options = normalize_creation_options(options, config=self.config)
        self._verify_rp_id(options.rp.id, rp_id_host)
        client_data = build_client_data(
            TYPE_CREATE, self.origin, websafe_encode(options.challenge)
        )

        with self._driver(channel, options.timeout, event) as driver:
            result = driver.make_credential(options, client_data, pin=pin)

        credential = materialize_attestation(
            result.response,
            client_data,
            attestation=options.attestation,
            extension_results=result.client_extension_results,
        )
        logger.info("Registered credential %s for %s", credential.id, options.rp.id)
        return credential

    def _request(
        self,
        channel: Channel,
        options: RequestInput,
        rp_id_host: Optional[str],
        pin,
        event: Optional[Event],
    ) -> List[AssertionCredential]:
        pin = PinBuffer.wrap(pin)
        try:
            return self._assert(channel, options, rp_id_host, pin, event)
        finally:
            if pin is not None:
                pin.wipe()

    def _assert(
        self, channel, options, rp_id_host, pin, event
    ) -> List[AssertionCredential]:
        if not isinstance(options, CredentialRequestOptions):
            options = normalize_request_options(options, config=self.config)
        rp_id = options.rp_id or rp_id_host or self._host
        self._verify_rp_id(rp_id, rp_id_host)
        client_data = build_client_data(
            TYPE_GET, self.origin, websafe_encode(options.challenge)
        )

        with self._driver(channel, options.timeout, event) as driver:
            results = driver.get_assertions(options, client_data, rp_id=rp_id, pin=pin)

        single = None
        if len(options.allow_credentials) == 1:
            single = options.allow_credentials[0].id
        return [
            materialize_assertion(
                result.response,
                client_data,
                credential_id=single,
                extension_results=result.client_extension_results,
            )
            for result in results
        ]

    def get_assertion(
        self,
        channel: Channel,
        options: RequestInput,
        rp_id_host: Optional[str] = None,
        pin=None,
        event: Optional[Event] = None,
    ) -> AssertionCredential:
        """Authenticate and return the first assertion the authenticator produced."""

        return self._request(channel, options, rp_id_host, pin, event)[0]

    def get_assertions(
        self,
        channel: Channel,
        options: RequestInput,
        rp_id_host: Optional[str] = None,
        pin=None,
        event: Optional[Event] = None,
    ) -> List[AssertionCredential]:
        """Authenticate and return one assertion per matching credential."""

        return self._request(channel, options, rp_id_host, pin, event)


def create_credential(
    channel: Channel,
    options: CreationInput,
    origin: str,
    rp_id_host: Optional[str] = None,
    pin=None,
    event: Optional[Event] = None,
    *,
    config: Optional[ClientConfig] = None,
) -> PublicKeyCredential:
    return PasskeyClient(origin, config).create_credential(
        channel, options, rp_id_host, pin, event
    )


def get_assertion(
    channel: Channel,
    options: RequestInput,
    origin: str,
    rp_id_host: Optional[str] = None,
    pin=None,
    event: Optional[Event] = None,
    *,
    config: Optional[ClientConfig] = None,
) -> AssertionCredential:
    return PasskeyClient(origin, config).get_assertion(
        channel, options, rp_id_host, pin, event
    )


def get_assertions(
    channel: Channel,
    options: RequestInput,
    origin: str,
    rp_id_host: Optional[str] = None,
    pin=None,
    event: Optional[Event] = None,
    *,
    config: Optional[ClientConfig] = None,
) -> List[AssertionCredential]:
    return PasskeyClient(origin, config).get_assertions(
        channel, options, rp_id_host, pin, event
    )


ResultCallback = Callable[[Any, Optional[BaseException]], None]


class ChannelDispatcher:
    """Holds one pending ceremony until the transport reports an authenticator.

    The transport calls :meth:`on_channel_available` once a contactless authenticator
    is reachable. The pending operation then runs on a worker thread and its outcome
    is delivered to the optional callback and to the returned future.
    """

    def __init__(self):
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="passkey-nfc-session"
        )
        self._lock = threading.Lock()
        self._pending: Optional[Tuple[Callable, concurrent.futures.Future, Any]] = None

    def submit(
        self,
        operation: Callable[[Channel], Any],
        callback: Optional[ResultCallback] = None,
    ) -> concurrent.futures.Future:
        future: concurrent.futures.Future = concurrent.futures.Future()
        with self._lock:
            if self._pending is not None:
                raise Busy("An operation is already waiting for an authenticator")
            self._pending = (operation, future, callback)
        return future

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def cancel(self) -> bool:
        with self._lock:
            pending, self._pending = self._pending, None
        if pending is None:
            return False
        return pending[1].cancel()

    def on_channel_available(
        self, channel: Channel
    ) -> Optional[concurrent.futures.Future]:
        """Hand ``channel`` to the pending operation.

        The dispatcher takes ownership of the channel. When no operation is waiting
        the channel is closed straight away.
        """

        with self._lock:
            pending, self._pending = self._pending, None
        if pending is None:
            logger.debug("Authenticator available but no operation is pending")
            channel.close()
            return None

        operation, future, callback = pending
        if not future.set_running_or_notify_cancel():
            channel.close()
            return None
        logger.info("Authenticator available, starting operation")
        self._executor.submit(self._run, operation, channel, future, callback)
        return future

    def _run(self, operation, channel, future, callback) -> None:
        try:
            result = operation(channel)
        except Exception as exc:
            logger.info("Operation failed: %s", exc)
            future.set_exception(exc)
            outcome = (None, exc)
        else:
            future.set_result(result)
            outcome = (result, None)

        if callback is not None:
            try:
                callback(*outcome)
            except Exception:
                logger.exception("Result callback raised")

    def shutdown(self, wait: bool = True) -> None:
        self.cancel()
        self._executor.shutdown(wait=wait)
