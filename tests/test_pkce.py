import json

import pytest

from session_auth.errors import InvalidParameter, PkceValidationError, UnsupportedMethod
from session_auth.pkce import (
    PKCE_STORAGE_KEY,
    UNRESERVED_CHARSET,
    PKCEManager,
    calculate_entropy,
    derive_challenge,
    generate_pkce_pair,
    generate_nonce,
    generate_state,
    generate_verifier,
    security_recommendations,
    validate_verifier,
    verify_challenge,
)
from session_auth.storage import MemoryStorage


RFC7636_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
RFC7636_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_s256_matches_rfc7636_example():
    assert derive_challenge(RFC7636_VERIFIER, "S256") == RFC7636_CHALLENGE


def test_plain_returns_verifier_unchanged():
    assert derive_challenge(RFC7636_VERIFIER, "plain") == RFC7636_VERIFIER


@pytest.mark.parametrize("length", [43, 64, 100, 128])
def test_challenge_is_deterministic_and_verifies(length):
    verifier = generate_verifier(length)

    assert len(verifier) == length
    assert set(verifier) <= set(UNRESERVED_CHARSET)
    for method in ("S256", "plain"):
        challenge = derive_challenge(verifier, method)
        assert derive_challenge(verifier, method) == challenge
        assert verify_challenge(verifier, challenge, method)


@pytest.mark.parametrize("length", [0, 42, 129])
def test_generate_verifier_rejects_out_of_range_length(length):
    with pytest.raises(InvalidParameter):
        generate_verifier(length)


def test_invalid_parameter_is_a_value_error():
    with pytest.raises(ValueError):
        generate_verifier(10)


def test_generated_verifiers_differ():
    assert generate_verifier() != generate_verifier()


def test_unsupported_method_raises():
    with pytest.raises(UnsupportedMethod):
        derive_challenge(RFC7636_VERIFIER, "S512")


def test_empty_verifier_raises():
    with pytest.raises(PkceValidationError):
        derive_challenge("", "S256")


def test_tampered_verifier_fails_verification():
    tampered = "X" + RFC7636_VERIFIER[1:]
    assert not verify_challenge(tampered, RFC7636_CHALLENGE, "S256")


def test_verify_returns_false_for_bad_inputs():
    assert not verify_challenge("", RFC7636_CHALLENGE)
    assert not verify_challenge(RFC7636_VERIFIER, "")
    assert not verify_challenge(RFC7636_VERIFIER, RFC7636_CHALLENGE, "S512")


def test_validate_verifier_length_bounds():
    assert not validate_verifier("a" * 42).valid
    assert not validate_verifier("a" * 129).valid
    assert validate_verifier("a" * 43).valid
    assert validate_verifier("a" * 128).valid


def test_validate_verifier_warns_below_recommended_length():
    result = validate_verifier("a" * 50)

    assert result.valid
    assert result.warnings


@pytest.mark.parametrize("bad_char", ["+", "/", "=", " ", "!", "é"])
def test_validate_verifier_rejects_reserved_characters(bad_char):
    result = validate_verifier("a" * 60 + bad_char)

    assert not result.valid
    assert "Code verifier contains invalid characters" in result.errors


def test_validate_verifier_requires_value():
    assert validate_verifier(None).errors == ["Code verifier is required"]


def test_generate_pkce_pair():
    pair = generate_pkce_pair(64)

    assert pair.method == "S256"
    assert verify_challenge(pair.code_verifier, pair.code_challenge)
    assert pair.entropy == pytest.approx(calculate_entropy("a" * 64))
    assert pair.validation.valid


def test_state_values_are_unique():
    assert generate_state() != generate_state()


class TestPKCEManager:
    def _manager(self, now):
        clock = {"now": now}
        manager = PKCEManager(MemoryStorage(), max_age=600, clock=lambda: clock["now"])
        return manager, clock

    def test_save_and_load(self):
        manager, _ = self._manager(1000.0)
        pair = generate_pkce_pair()

        manager.save(pair, state="st", nonce="n")
        pending = manager.load()

        assert pending.code_verifier == pair.code_verifier
        assert pending.code_challenge == pair.code_challenge
        assert pending.state == "st"
        assert pending.nonce == "n"
        assert pending.created_at == 1000.0

    def test_persisted_layout(self):
        manager, _ = self._manager(1000.0)
        pair = generate_pkce_pair()
        manager.save(pair, state="st")

        stored = json.loads(manager.storage.get(PKCE_STORAGE_KEY))

        assert stored["codeVerifier"] == pair.code_verifier
        assert stored["codeChallenge"] == pair.code_challenge
        assert stored["state"] == "st"

    def test_consume_removes_entry(self):
        manager, _ = self._manager(1000.0)
        manager.save(generate_pkce_pair(), state="st")

        assert manager.consume() is not None
        assert manager.load() is None
        assert manager.consume() is None

    def test_stale_entry_is_discarded(self):
        manager, clock = self._manager(1000.0)
        manager.save(generate_pkce_pair(), state="st")

        clock["now"] = 1000.0 + 601

        assert manager.load() is None
        assert manager.storage.get(PKCE_STORAGE_KEY) is None

    def test_unreadable_entry_is_discarded(self):
        manager, _ = self._manager(1000.0)
        manager.storage.set(PKCE_STORAGE_KEY, "{not json")

        assert manager.load() is None
        assert manager.storage.get(PKCE_STORAGE_KEY) is None

    def test_incomplete_entry_is_discarded(self):
        manager, _ = self._manager(1000.0)
        manager.storage.set(PKCE_STORAGE_KEY, json.dumps({
            "codeVerifier": "",
            "codeChallenge": "c",
            "state": "s",
            "createdAt": 1000.0,
        }))

        assert manager.load() is None


def test_security_recommendations_match_generator_defaults():
    recommendations = security_recommendations()

    assert recommendations["preferred_method"] == "S256"
    assert "plain" in recommendations["avoid_methods"]
    assert len(generate_verifier()) == recommendations["recommended_length"]
    assert recommendations["minimum_length"] >= 43


def test_nonce_values_are_unique_and_url_safe():
    nonces = {generate_nonce() for _ in range(20)}

    assert len(nonces) == 20
    assert all(set(nonce) <= set(UNRESERVED_CHARSET) for nonce in nonces)
