import pytest
from fido2.utils import websafe_encode

from passkey_nfc.config import ClientConfig
from passkey_nfc.client import PasskeyClient

from fakes import FakeAuthenticator, FakeNfcChannel

ORIGIN = "https://example.com"
RP_ID = "example.com"


@pytest.fixture()
def authenticator():
    return FakeAuthenticator()


@pytest.fixture()
def channel(authenticator):
    return FakeNfcChannel(authenticator)


@pytest.fixture()
def new_channel(authenticator):
    """Factory for fresh channels to the same authenticator, one per tap."""

    def _factory(**kwargs):
        return FakeNfcChannel(authenticator, **kwargs)

    return _factory


@pytest.fixture()
def config():
    return ClientConfig(timeout_ms=5000)


@pytest.fixture()
def client(config):
    return PasskeyClient(ORIGIN, config)


@pytest.fixture()
def creation_description():
    return {
        "rp": {"name": "Example RP", "id": RP_ID},
        "user": {
            "id": websafe_encode(b"user123"),
            "name": "user@example.com",
            "displayName": "Example User",
        },
        "challenge": websafe_encode(bytes(range(32))),
        "pubKeyCredParams": [{"type": "public-key", "alg": -7}],
        "authenticatorSelection": {
            "residentKey": "required",
            "userVerification": "required",
        },
        "timeout": 60000,
        "attestation": "none",
    }


@pytest.fixture()
def request_description():
    return {
        "challenge": websafe_encode(bytes(range(32, 64))),
        "timeout": 60000,
        "rpId": RP_ID,
        "userVerification": "required",
    }
