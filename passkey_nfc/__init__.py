"""WebAuthn passkey client core for contactless FIDO2 authenticators."""
from .challenge import Challenge, generate_challenge
from .channel import Channel, ChannelDevice
from .client import (
    ChannelDispatcher,
    PasskeyClient,
    create_credential,
    get_assertion,
    get_assertions,
)
from .client_data import build_client_data
from .config import ClientConfig, configure_logging, load_config
from .errors import *  # noqa: F401,F403
from .errors import __all__ as _errors_all
from .materializer import AssertionCredential, PublicKeyCredential, materialize
from .options import normalize_creation_options, normalize_request_options
from .session import Ctap2SessionDriver, SessionState

__all__ = [
    "AssertionCredential",
    "Challenge",
    "Channel",
    "ChannelDevice",
    "ChannelDispatcher",
    "ClientConfig",
    "Ctap2SessionDriver",
    "PasskeyClient",
    "PublicKeyCredential",
    "SessionState",
    "build_client_data",
    "configure_logging",
    "create_credential",
    "generate_challenge",
    "get_assertion",
    "get_assertions",
    "load_config",
    "materialize",
    "normalize_creation_options",
    "normalize_request_options",
] + list(_errors_all)
