"""Tests for checkout handoff tokens."""

import pytest

from agentic_checkout.errors import ConfigurationError
from agentic_checkout.handoff import HandoffTokenService
from conftest import FakeClock


@pytest.fixture
def service(clock: FakeClock) -> HandoffTokenService:
    return HandoffTokenService("test-secret", ttl_seconds=300, clock=clock)


class TestHandoffTokens:
    def test_token_verifies_for_its_checkout(self, service):
        token = service.mint("checkout_a")
        assert token.count(".") == 2
        assert service.verify(token, "checkout_a") is True

    def test_token_bound_to_one_checkout(self, service):
        token = service.mint("checkout_a")
        assert service.verify(token, "checkout_b") is False

    def test_expired_token_rejected(self, service, clock):
        token = service.mint("checkout_a")
        clock.advance(299)
        assert service.verify(token, "checkout_a") is True
        clock.advance(2)
        assert service.verify(token, "checkout_a") is False

    def test_tampered_signature_rejected(self, service):
        token = service.mint("checkout_a")
        head, sig = token.rsplit(".", 1)
        flipped = ("0" if sig[0] != "0" else "1") + sig[1:]
        assert service.verify(f"{head}.{flipped}", "checkout_a") is False

    def test_tampered_expiry_rejected(self, service):
        id_part, _exp, sig = service.mint("checkout_a").split(".")
        assert service.verify(f"{id_part}.ffffffffffff.{sig}", "checkout_a") is False

    def test_token_from_other_secret_rejected(self, service, clock):
        other = HandoffTokenService("another-secret", clock=clock)
        assert service.verify(other.mint("checkout_a"), "checkout_a") is False

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "a.b.not-hex"])
    def test_malformed_tokens_rejected(self, service, token):
        assert service.verify(token, "checkout_a") is False

    def test_verification_is_stateless(self, service, clock):
        token = service.mint("checkout_a")
        verifier = HandoffTokenService("test-secret", clock=clock)
        assert verifier.verify(token, "checkout_a") is True

    def test_missing_secret_is_configuration_error(self, clock):
        service = HandoffTokenService("", clock=clock)
        with pytest.raises(ConfigurationError):
            service.mint("checkout_a")
