import hashlib
import json

import cbor2
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from fido2 import cbor
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import AttestationConveyancePreference

from passkey_nfc.errors import MalformedResponse
from passkey_nfc.materializer import (
    AssertionCredential,
    PublicKeyCredential,
    canonicalize,
    decode_response,
    materialize,
    materialize_assertion,
    materialize_attestation,
)

from fakes import AAGUID, cose_es256

CLIENT_DATA = b'{"type":"webauthn.create","challenge":"abc","origin":"https://example.com"}'
CREDENTIAL_ID = bytes(range(1, 33))
RP_ID_HASH = hashlib.sha256(b"example.com").digest()


def _canonical_key_order(keys):
    ordered = []
    for key in keys:
        encoded = cbor2.dumps(key, canonical=True)
        ordered.append((len(encoded), encoded, key))
    ordered.sort(key=lambda item: (item[0], item[1]))
    return [item[2] for item in ordered]


@pytest.fixture(scope="module")
def private_key():
    return ec.generate_private_key(ec.SECP256R1())


def _attested_auth_data(public_key, cose=None, flags=0x45):
    cose = cose or cose_es256(public_key)
    return (
        RP_ID_HASH
        + bytes([flags])
        + (0).to_bytes(4, "big")
        + AAGUID
        + len(CREDENTIAL_ID).to_bytes(2, "big")
        + CREDENTIAL_ID
        + cbor.encode(cose)
    )


def _make_credential_response(private_key, **kwargs):
    return {
        1: "packed",
        2: _attested_auth_data(private_key.public_key(), **kwargs),
        3: {"alg": -7, "sig": b"\x30" * 70},
    }


def test_attestation_from_bytes_with_status_byte(private_key):
    raw = b"\x00" + cbor.encode(_make_credential_response(private_key))

    credential = materialize(raw, CLIENT_DATA)

    assert isinstance(credential, PublicKeyCredential)
    assert credential.raw_id == CREDENTIAL_ID
    assert credential.id == websafe_encode(CREDENTIAL_ID)
    assert credential.public_key_algorithm == -7


def test_attestation_dict_uses_canonical_key_order(private_key):
    credential = materialize_attestation(_make_credential_response(private_key), CLIENT_DATA)

    data = credential.to_dict()

    assert list(data) == _canonical_key_order(data.keys())
    assert list(data) == [
        "id",
        "type",
        "rawId",
        "response",
        "clientExtensionResults",
        "authenticatorAttachment",
    ]
    assert list(data["response"]) == _canonical_key_order(data["response"].keys())
    assert data["id"] == data["rawId"] == websafe_encode(CREDENTIAL_ID)
    assert data["type"] == "public-key"
    assert websafe_decode(data["response"]["clientDataJSON"]) == CLIENT_DATA
    assert json.loads(credential.to_json()) == data


def test_none_attestation_strips_statement_and_zeroes_aaguid(private_key):
    credential = materialize_attestation(_make_credential_response(private_key), CLIENT_DATA)

    attestation = cbor2.loads(websafe_decode(credential.to_dict()["response"]["attestationObject"]))

    assert attestation["fmt"] == "none"
    assert attestation["attStmt"] == {}
    assert attestation["authData"][37:53] == b"\0" * 16
    assert credential.authenticator_data.credential_data.credential_id == CREDENTIAL_ID


def test_none_format_response_still_has_aaguid_zeroed(private_key):
    response = _make_credential_response(private_key)
    response[1], response[3] = "none", {}

    credential = materialize_attestation(response, CLIENT_DATA)

    assert bytes(credential.authenticator_data.credential_data.aaguid) == b"\0" * 16
    assert credential.attestation_object.fmt == "none"


def test_direct_attestation_keeps_statement(private_key):
    credential = materialize_attestation(
        _make_credential_response(private_key),
        CLIENT_DATA,
        attestation=AttestationConveyancePreference.DIRECT,
    )

    assert credential.attestation_object.fmt == "packed"
    assert credential.attestation_object.att_stmt["alg"] == -7
    assert bytes(credential.authenticator_data.credential_data.aaguid) == AAGUID


def test_public_key_is_exported_as_spki(private_key):
    credential = materialize_attestation(_make_credential_response(private_key), CLIENT_DATA)

    spki = websafe_decode(credential.to_dict()["response"]["publicKey"])

    loaded = serialization.load_der_public_key(spki)
    assert loaded.public_numbers() == private_key.public_key().public_numbers()


def test_describe_reports_flags_and_credential(private_key):
    credential = materialize_attestation(_make_credential_response(private_key), CLIENT_DATA)

    details = credential.describe()

    auth_data = details["authData"]
    assert auth_data["flags"]["userPresent"] is True
    assert auth_data["flags"]["userVerified"] is True
    assert auth_data["flags"]["attestedCredentialDataIncluded"] is True
    assert auth_data["signCount"] == 0
    assert auth_data["attestedCredentialData"]["credentialId"] == websafe_encode(CREDENTIAL_ID)
    assert details["fmt"] == "none"


@pytest.mark.parametrize(
    "mutate",
    [
        lambda r: r.pop(2),
        lambda r: r.pop(1),
        lambda r: r.update({2: r[2][:20]}),
        lambda r: r.update({2: r[2][:60]}),
        lambda r: r.update({2: r[2][:32] + b"\x01" + r[2][33:37]}),
        lambda r: r.update({2: "not bytes"}),
        lambda r: r.update({3: ["not", "a", "map"]}),
    ],
)
def test_structurally_broken_attestation_is_malformed(private_key, mutate):
    response = _make_credential_response(private_key)
    mutate(response)

    with pytest.raises(MalformedResponse):
        materialize_attestation(response, CLIENT_DATA)


def test_invalid_cose_key_is_malformed(private_key):
    cose = cose_es256(private_key.public_key())
    cose[-2] = cose[-2][:31]

    with pytest.raises(MalformedResponse):
        materialize_attestation(_make_credential_response(private_key, cose=cose), CLIENT_DATA)


def test_point_off_curve_is_malformed(private_key):
    cose = cose_es256(private_key.public_key())
    cose[-3] = bytes(32)

    with pytest.raises(MalformedResponse):
        materialize_attestation(_make_credential_response(private_key, cose=cose), CLIENT_DATA)


@pytest.mark.parametrize(
    "raw",
    [b"", b"\x2e", b"\x00\xff\xff", b"\x00" + cbor.encode([1, 2]), cbor.encode({"a": 1}), 42],
)
def test_undecodable_responses_are_malformed(raw):
    with pytest.raises(MalformedResponse):
        decode_response(raw)


def _assertion_response(**extra):
    auth_data = RP_ID_HASH + b"\x05" + (7).to_bytes(4, "big")
    response = {
        1: {"id": CREDENTIAL_ID, "type": "public-key"},
        2: auth_data,
        3: b"\x30" * 70,
        4: {"id": b"user123"},
    }
    response.update(extra)
    return response


def test_assertion_is_materialized():
    client_data = b'{"type":"webauthn.get","challenge":"abc","origin":"https://example.com"}'

    credential = materialize(_assertion_response(), client_data)

    assert isinstance(credential, AssertionCredential)
    assert credential.raw_id == CREDENTIAL_ID
    assert credential.user_handle == b"user123"
    assert credential.authenticator_data.counter == 7
    data = credential.to_dict()
    assert list(data) == _canonical_key_order(data.keys())
    assert websafe_decode(data["response"]["userHandle"]) == b"user123"
    assert credential.describe()["signCount"] == 7


def test_assertion_without_credential_uses_single_allowed_id():
    response = _assertion_response()
    del response[1]

    credential = materialize_assertion(response, b"{}", credential_id=b"allowed")

    assert credential.raw_id == b"allowed"


@pytest.mark.parametrize(
    "mutate",
    [
        lambda r: r.pop(3),
        lambda r: r.pop(2),
        lambda r: r.update({3: b""}),
        lambda r: r.update({1: "cred"}),
        lambda r: r.update({1: {"type": "public-key"}}),
        lambda r: r.update({2: b"\x00" * 36}),
    ],
)
def test_structurally_broken_assertion_is_malformed(mutate):
    response = _assertion_response()
    mutate(response)

    with pytest.raises(MalformedResponse):
        materialize_assertion(response, b"{}")


def test_canonicalize_orders_nested_maps():
    value = canonicalize({"bb": 1, "a": {"ccc": 1, 10: 2, "d": 3}})

    assert list(value) == ["a", "bb"]
    assert list(value["a"]) == [10, "d", "ccc"]
