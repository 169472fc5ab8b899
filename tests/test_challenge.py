import pytest

from passkey_nfc.challenge import CHALLENGE_LENGTH, Challenge, decode_b64, generate_challenge


def test_generated_challenges_are_32_bytes_and_distinct():
    first = generate_challenge()
    second = generate_challenge()

    assert len(first.value) == CHALLENGE_LENGTH == 32
    assert first != second


def test_encode_is_url_safe_and_unpadded():
    challenge = Challenge(b"\xfb\xff" * 16)

    encoded = challenge.encode()

    assert "=" not in encoded
    assert "+" not in encoded and "/" not in encoded
    assert len(encoded) == 43
    assert Challenge.decode(encoded) == challenge


def test_zero_challenge_encodes_to_43_a_characters():
    assert Challenge(b"\0" * 32).encode() == "A" * 43


@pytest.mark.parametrize("length", [0, 16, 31, 33, 64])
def test_challenge_rejects_other_lengths(length):
    with pytest.raises(ValueError):
        Challenge(b"\x01" * length)


def test_decode_b64_accepts_padding_and_standard_alphabet():
    assert decode_b64("+/8=") == b"\xfb\xff"
    assert decode_b64("-_8") == b"\xfb\xff"


@pytest.mark.parametrize("value", ["", "   ", "a", "ab$c", 42])
def test_decode_b64_rejects_invalid_values(value):
    with pytest.raises(ValueError):
        decode_b64(value)
