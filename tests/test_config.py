import logging

import pytest
from fido2.webauthn import ResidentKeyRequirement, UserVerificationRequirement

from passkey_nfc.config import DEFAULT_TIMEOUT_MS, ClientConfig, configure_logging, load_config


def test_defaults_without_environment():
    config = load_config({})

    assert config == ClientConfig()
    assert config.timeout_ms == DEFAULT_TIMEOUT_MS == 60000
    assert config.resident_key == ResidentKeyRequirement.DISCOURAGED
    assert config.create_user_verification == UserVerificationRequirement.PREFERRED
    assert config.get_user_verification == UserVerificationRequirement.PREFERRED
    assert config.strict_cbor is True
    assert config.extended_apdu is False


def test_environment_overrides():
    config = load_config(
        {
            "PASSKEY_NFC_TIMEOUT_MS": "1500",
            "PASSKEY_NFC_RESIDENT_KEY": "Required",
            "PASSKEY_NFC_CREATE_USER_VERIFICATION": "required",
            "PASSKEY_NFC_GET_USER_VERIFICATION": "discouraged",
            "PASSKEY_NFC_STRICT_CBOR": "off",
            "PASSKEY_NFC_EXTENDED_APDU": "yes",
        }
    )

    assert config.timeout_ms == 1500
    assert config.resident_key == ResidentKeyRequirement.REQUIRED
    assert config.create_user_verification == UserVerificationRequirement.REQUIRED
    assert config.get_user_verification == UserVerificationRequirement.DISCOURAGED
    assert config.strict_cbor is False
    assert config.extended_apdu is True


@pytest.mark.parametrize(
    "environ",
    [
        {"PASSKEY_NFC_TIMEOUT_MS": "soon"},
        {"PASSKEY_NFC_TIMEOUT_MS": "-5"},
        {"PASSKEY_NFC_RESIDENT_KEY": "sometimes"},
    ],
)
def test_invalid_environment_values_are_rejected(environ):
    with pytest.raises(ValueError):
        load_config(environ)


def test_non_positive_timeout_is_rejected():
    with pytest.raises(ValueError):
        ClientConfig(timeout_ms=0)


def test_configure_logging_returns_package_logger(monkeypatch):
    monkeypatch.setenv("PASSKEY_NFC_LOG_LEVEL", "debug")

    logger = configure_logging()

    assert logger.name == "passkey_nfc"
    assert isinstance(logger, logging.Logger)
