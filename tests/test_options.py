import pytest
from fido2.utils import websafe_encode
from fido2.webauthn import (
    AttestationConveyancePreference,
    PublicKeyCredentialCreationOptions,
    PublicKeyCredentialRequestOptions,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from passkey_nfc.config import ClientConfig
from passkey_nfc.errors import InvalidEntity, InvalidOptions, UnsupportedAlgorithm
from passkey_nfc.options import normalize_creation_options, normalize_request_options


def test_creation_options_are_normalized(creation_description):
    options = normalize_creation_options(creation_description)

    assert options.rp.id == "example.com"
    assert options.rp.name == "Example RP"
    assert options.user.id == b"user123"
    assert options.user.display_name == "Example User"
    assert options.challenge == bytes(range(32))
    assert options.algorithms == (-7,)
    assert options.resident_key == ResidentKeyRequirement.REQUIRED
    assert options.user_verification == UserVerificationRequirement.REQUIRED
    assert options.attestation == AttestationConveyancePreference.NONE
    assert options.timeout == 60000


def test_creation_defaults_come_from_config(creation_description):
    del creation_description["authenticatorSelection"]

    options = normalize_creation_options(creation_description)
    assert options.resident_key == ResidentKeyRequirement.DISCOURAGED
    assert options.user_verification == UserVerificationRequirement.PREFERRED

    config = ClientConfig(
        resident_key=ResidentKeyRequirement.PREFERRED,
        create_user_verification=UserVerificationRequirement.DISCOURAGED,
    )
    options = normalize_creation_options(creation_description, config=config)
    assert options.resident_key == ResidentKeyRequirement.PREFERRED
    assert options.user_verification == UserVerificationRequirement.DISCOURAGED


def test_legacy_require_resident_key_maps_to_required(creation_description):
    creation_description["authenticatorSelection"] = {"requireResidentKey": True}

    options = normalize_creation_options(creation_description)

    assert options.resident_key == ResidentKeyRequirement.REQUIRED


@pytest.mark.parametrize(
    "mutate",
    [
        lambda d: d.pop("rp"),
        lambda d: d["rp"].pop("id"),
        lambda d: d["rp"].update(id="  "),
        lambda d: d.pop("user"),
        lambda d: d["user"].pop("id"),
        lambda d: d["user"].update(id=websafe_encode(b"x" * 65)),
        lambda d: d["user"].update(id="***"),
    ],
)
def test_missing_or_invalid_entities_raise_invalid_entity(creation_description, mutate):
    mutate(creation_description)

    with pytest.raises(InvalidEntity):
        normalize_creation_options(creation_description)


def test_user_id_of_64_bytes_is_accepted(creation_description):
    creation_description["user"]["id"] = websafe_encode(b"x" * 64)

    assert len(normalize_creation_options(creation_description).user.id) == 64


@pytest.mark.parametrize("params", [None, [], [{"type": "other", "alg": -7}]])
def test_missing_algorithms_raise_unsupported_algorithm(creation_description, params):
    creation_description["pubKeyCredParams"] = params

    with pytest.raises(UnsupportedAlgorithm):
        normalize_creation_options(creation_description)


def test_duplicate_algorithms_are_collapsed(creation_description):
    creation_description["pubKeyCredParams"] = [
        {"type": "public-key", "alg": -7},
        {"type": "public-key", "alg": -257},
        {"type": "public-key", "alg": -7},
    ]

    assert normalize_creation_options(creation_description).algorithms == (-7, -257)


@pytest.mark.parametrize(
    "mutate",
    [
        lambda d: d.pop("challenge"),
        lambda d: d.update(challenge="not base64!"),
        lambda d: d.update(timeout=0),
        lambda d: d.update(timeout=True),
        lambda d: d.update(attestation="enterprise"),
        lambda d: d.update(attestation="sometimes"),
        lambda d: d["authenticatorSelection"].update(userVerification="always"),
        lambda d: d["authenticatorSelection"].update(userVerification="requried"),
        lambda d: d["authenticatorSelection"].update(residentKey="sometimes"),
        lambda d: d.update(extensions={"largeBlob": {"read": True}}),
        lambda d: d.update(extensions={"prf": {"eval": {"second": "AAAA"}}}),
        lambda d: d.update(pubKeyCredParams=[{"type": "public-key", "alg": "ES256"}]),
    ],
)
def test_invalid_creation_options_raise_invalid_options(creation_description, mutate):
    mutate(creation_description)

    with pytest.raises(InvalidOptions):
        normalize_creation_options(creation_description)


def test_extensions_are_validated_and_passed_through(creation_description):
    creation_description["extensions"] = {
        "prf": {"eval": {"first": websafe_encode(b"seed")}},
        "largeBlob": {"support": "preferred"},
        "credProps": True,
        "example.custom": {"value": 1},
    }

    options = normalize_creation_options(creation_description)

    assert options.extensions["prf"] == {"eval": {"first": b"seed"}}
    assert options.extensions["largeBlob"] == {"support": "preferred"}
    assert options.extensions["credProps"] is True
    assert options.extensions["example.custom"] == {"value": 1}


def test_creation_options_convert_to_webauthn(creation_description):
    creation_description["excludeCredentials"] = [
        {"type": "public-key", "id": websafe_encode(b"cred-1")}
    ]
    creation_description["extensions"] = {"prf": {"eval": {"first": websafe_encode(b"s")}}}

    converted = normalize_creation_options(creation_description).to_webauthn()

    assert isinstance(converted, PublicKeyCredentialCreationOptions)
    assert converted.rp.id == "example.com"
    assert converted.user.id == b"user123"
    assert converted.exclude_credentials[0].id == b"cred-1"
    assert converted.extensions["prf"]["eval"]["first"] == websafe_encode(b"s")


def test_request_options_are_normalized(request_description):
    request_description["allowCredentials"] = [
        {"type": "public-key", "id": websafe_encode(b"cred-1"), "transports": ["nfc"]},
        {"type": "other", "id": websafe_encode(b"ignored")},
    ]
    request_description["extensions"] = {
        "prf": {"eval": {"first": "U0VFRA"}},
        "largeBlob": {"read": True},
    }

    options = normalize_request_options(request_description)

    assert options.rp_id == "example.com"
    assert options.user_verification == UserVerificationRequirement.REQUIRED
    assert [cred.id for cred in options.allow_credentials] == [b"cred-1"]
    assert options.allow_credentials[0].transports == ("nfc",)
    assert options.extensions["prf"]["eval"]["first"] == b"SEED"
    assert isinstance(options.to_webauthn(), PublicKeyCredentialRequestOptions)


def test_request_user_verification_default_is_configurable(request_description):
    del request_description["userVerification"]
    config = ClientConfig(get_user_verification=UserVerificationRequirement.DISCOURAGED)

    options = normalize_request_options(request_description, config=config)

    assert options.user_verification == UserVerificationRequirement.DISCOURAGED


@pytest.mark.parametrize(
    "extensions",
    [
        {"largeBlob": {}},
        {"largeBlob": {"read": True, "write": "AAAA"}},
        {"largeBlob": {"support": "required"}},
        {"prf": {"eval": {"first": "AAAA", "third": "AAAA"}}},
        "prf",
    ],
)
def test_invalid_request_extensions_raise_invalid_options(request_description, extensions):
    request_description["extensions"] = extensions

    with pytest.raises(InvalidOptions):
        normalize_request_options(request_description)


def test_request_without_challenge_is_rejected(request_description):
    del request_description["challenge"]

    with pytest.raises(InvalidOptions):
        normalize_request_options(request_description)


@pytest.mark.parametrize("value", ["always", "requried", ""])
def test_unknown_request_user_verification_is_rejected(request_description, value):
    request_description["userVerification"] = value

    with pytest.raises(InvalidOptions):
        normalize_request_options(request_description)


def test_descriptor_transports_are_sent_to_the_authenticator(request_description):
    request_description["allowCredentials"] = [
        {"type": "public-key", "id": websafe_encode(b"cred-1"), "transports": ["nfc"]},
        {"type": "public-key", "id": websafe_encode(b"cred-2")},
    ]

    descriptors = normalize_request_options(request_description).allow_credentials

    assert descriptors[0].to_ctap() == {
        "id": b"cred-1",
        "type": "public-key",
        "transports": ["nfc"],
    }
    assert descriptors[1].to_ctap() == {"id": b"cred-2", "type": "public-key"}
