"""ISO 7816 APDU framing of CTAP2 over a contactless smartcard channel."""
from __future__ import annotations

import abc
import concurrent.futures
import logging
import struct
import time
from threading import Event
from typing import Callable, Iterator, Optional, Tuple

from fido2.ctap import CtapDevice, CtapError
from fido2.hid import CAPABILITY, CTAPHID, STATUS

from .errors import Timeout, TransportError, UserCancelled

__all__ = ["AID_FIDO", "Channel", "ChannelDevice", "Deadline"]

logger = logging.getLogger(__name__)

AID_FIDO = b"\xa0\x00\x00\x06\x47\x2f\x00\x01"

SW_SUCCESS = (0x90, 0x00)
SW_UPDATE = (0x91, 0x00)
SW1_MORE_DATA = 0x61

_INS_SELECT = 0xA4
_INS_GET_RESPONSE = 0xC0
_INS_NFCCTAP_MSG = 0x10
_INS_NFCCTAP_GETRESPONSE = 0x11
_SHORT_APDU_CHUNK = 250


class Channel(abc.ABC):
    """Byte-oriented duplex channel handed over by the transport layer.

    ``send`` takes a command APDU and returns the response data followed by the two
    status bytes SW1 SW2.
    """

    @abc.abstractmethod
    def send(self, apdu: bytes) -> bytes:
        """Send a command APDU and block until the response arrives."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the underlying connection. Calling it again has no effect."""


class Deadline:
    """Wall-clock budget shared by every exchange of one operation."""

    def __init__(self, timeout_ms: int, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.timeout_ms = timeout_ms
        self._expires_at = clock() + timeout_ms / 1000.0

    def remaining(self) -> float:
        return max(self._expires_at - self._clock(), 0.0)

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0


class ChannelDevice(CtapDevice):
    """CtapDevice speaking NFCCTAP over a :class:`Channel`.

    Every send is bounded by the operation :class:`Deadline`. A send that does not
    return in time closes the channel and raises :class:`~passkey_nfc.errors.Timeout`.
    """

    def __init__(
        self,
        channel: Channel,
        deadline: Deadline,
        *,
        event: Optional[Event] = None,
        use_ext_apdu: bool = False,
    ):
        self._channel = channel
        self._deadline = deadline
        self._event = event or Event()
        self.use_ext_apdu = use_ext_apdu
        self._closed = False
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="passkey-nfc-apdu"
        )
        self._select()

    def __repr__(self):
        return f"ChannelDevice({self._channel!r})"

    @property
    def capabilities(self) -> int:
        return CAPABILITY.CBOR

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._channel.close()
        finally:
            self._executor.shutdown(wait=False)

    @classmethod
    def list_devices(cls) -> Iterator["ChannelDevice"]:
        raise NotImplementedError("Channels are supplied by the transport layer")

    def _check_aborted(self) -> None:
        if self._event.is_set():
            raise UserCancelled("Operation cancelled")
        if self._deadline.expired:
            self.close()
            raise Timeout("Authenticator did not respond in time")

    def apdu_exchange(self, apdu: bytes) -> Tuple[bytes, int, int]:
        if self._closed:
            raise TransportError("Channel is closed")
        self._check_aborted()

        future = self._executor.submit(self._channel.send, bytes(apdu))
        try:
            response = future.result(timeout=self._deadline.remaining())
        except concurrent.futures.TimeoutError:
            logger.warning(
                "Authenticator did not answer within %d ms", self._deadline.timeout_ms
            )
            self.close()
            raise Timeout(
                f"Authenticator did not respond within {self._deadline.timeout_ms} ms"
            ) from None
        except (OSError, TransportError) as exc:
            self.close()
            raise TransportError(f"Channel failure: {exc}") from exc

        if len(response) < 2:
            self.close()
            raise TransportError("Response APDU is missing its status word")
        return bytes(response[:-2]), response[-2], response[-1]

    def _select(self) -> None:
        apdu = struct.pack(">4BB", 0x00, _INS_SELECT, 0x04, 0x00, len(AID_FIDO)) + AID_FIDO
        resp, sw1, sw2 = self.apdu_exchange(apdu)
        if (sw1, sw2) != SW_SUCCESS:
            self.close()
            raise TransportError(
                f"FIDO applet selection failed (SW {sw1:02X}{sw2:02X})"
            )
        logger.debug("FIDO applet selected: %r", resp)

    def _chain_apdus(
        self, cla: int, ins: int, p1: int, p2: int, data: bytes = b""
    ) -> Tuple[bytes, int, int]:
        if self.use_ext_apdu:
            header = struct.pack(">4BBH", cla, ins, p1, p2, 0x00, len(data))
            return self.apdu_exchange(header + data + b"\x00\x00")

        while len(data) > _SHORT_APDU_CHUNK:
            to_send, data = data[:_SHORT_APDU_CHUNK], data[_SHORT_APDU_CHUNK:]
            header = struct.pack(">4BB", 0x10 | cla, ins, p1, p2, len(to_send))
            resp, sw1, sw2 = self.apdu_exchange(header + to_send)
            if (sw1, sw2) != SW_SUCCESS:
                return resp, sw1, sw2

        apdu = struct.pack(">4B", cla, ins, p1, p2)
        if data:
            apdu += struct.pack(">B", len(data)) + data
        resp, sw1, sw2 = self.apdu_exchange(apdu + b"\x00")
        while sw1 == SW1_MORE_DATA:
            more, sw1, sw2 = self.apdu_exchange(
                struct.pack(">4BB", 0x00, _INS_GET_RESPONSE, 0x00, 0x00, sw2)
            )
            resp += more
        return resp, sw1, sw2

    def _call_cbor(self, data: bytes, event: Optional[Event], on_keepalive) -> bytes:
        if event is not None:
            self._event = event
        resp, sw1, sw2 = self._chain_apdus(0x80, _INS_NFCCTAP_MSG, 0x80, 0x00, data)
        last_ka = None
        while (sw1, sw2) == SW_UPDATE:
            self._check_aborted()
            if resp:
                try:
                    ka_status = STATUS(resp[0])
                except ValueError:
                    ka_status = None
                if on_keepalive and ka_status is not None and ka_status != last_ka:
                    last_ka = ka_status
                    on_keepalive(ka_status)
            resp, sw1, sw2 = self._chain_apdus(0x80, _INS_NFCCTAP_GETRESPONSE, 0x00, 0x00)

        if (sw1, sw2) != SW_SUCCESS:
            logger.debug("NFCCTAP_MSG failed with SW %02X%02X", sw1, sw2)
            raise CtapError(CtapError.ERR.OTHER)
        return resp

    def call(
        self,
        cmd: int,
        data: bytes = b"",
        event: Optional[Event] = None,
        on_keepalive: Optional[Callable[[STATUS], None]] = None,
    ) -> bytes:
        if cmd == CTAPHID.CBOR:
            return self._call_cbor(data, event, on_keepalive)
        raise CtapError(CtapError.ERR.INVALID_COMMAND)
