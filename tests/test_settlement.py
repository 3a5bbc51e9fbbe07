"""Tests for the settlement stage."""

import asyncio

import pytest

from agentic_checkout.errors import NotFoundError, UpstreamError, UpstreamFailure, UpstreamFailureKind
from agentic_checkout.models import CartStatus, PaymentStatus, ProtocolStage
from agentic_checkout.stages.common import StageContext
from conftest import SESSION_ID, checked_out_cart


async def _ready_to_pay(orchestrator, ctx, items=None) -> str:
    checkout_id = await checked_out_cart(orchestrator, ctx, items)
    mandate = await orchestrator.create_mandate(ctx, checkout_id)
    assert "mandate_id" in mandate
    realized = await orchestrator.realize_credentials(ctx)
    assert realized["success"] is True
    return checkout_id


def _decline(message: str) -> UpstreamError:
    return UpstreamError(
        UpstreamFailure(
            service="processor",
            kind=UpstreamFailureKind.HTTP_STATUS,
            message=message,
            status_code=402,
            code="card_declined",
            decline_code="insufficient_funds",
        )
    )


class TestSettlementSuccess:
    async def test_charges_catalog_total_in_minor_units(self, orchestrator, ctx, processor):
        checkout_id = await _ready_to_pay(orchestrator, ctx)

        result = await orchestrator.execute_payment(ctx, checkout_id)

        assert result["amount"] == "89.99"
        assert result["amount_minor"] == 8999
        assert result["order_id"] == checkout_id
        assert len(processor.charges) == 1
        charge = processor.charges[0]
        assert charge["amount_minor"] == 8999
        assert charge["reference"] == "pm_card_visa"
        assert charge["idempotency_key"] == f"pay_{checkout_id}"
        assert charge["metadata"]["user_id"] != ctx.user_id

    async def test_success_marks_cart_paid_and_clears_vault(
        self, orchestrator, ctx, catalog, ledger, vault, sessions
    ):
        checkout_id = await _ready_to_pay(orchestrator, ctx, {"prod_002": 2})

        await orchestrator.execute_payment(ctx, checkout_id)

        assert ledger.get(checkout_id).status == CartStatus.PAID
        assert catalog.get("prod_002").stock == 6
        assert await vault.get(SESSION_ID) is None
        state = await sessions.get(SESSION_ID)
        assert state.payment_status == PaymentStatus.SUCCEEDED
        assert state.stage == ProtocolStage.COMPLETED
        assert state.charge_id == "pi_1"

    async def test_credentials_valid_just_inside_window(self, orchestrator, ctx, clock, processor):
        checkout_id = await _ready_to_pay(orchestrator, ctx)
        clock.advance(54 * 60)

        result = await orchestrator.execute_payment(ctx, checkout_id)

        assert result["status"] == "succeeded"
        assert len(processor.charges) == 1

    async def test_stock_shortfall_after_charge_needs_reconciliation(
        self, orchestrator, ctx, catalog, ledger, sessions
    ):
        checkout_id = await _ready_to_pay(orchestrator, ctx, {"prod_002": 2})
        catalog.decrement_stock({"prod_002": 7})

        result = await orchestrator.execute_payment(ctx, checkout_id)

        assert result["reconciliation_required"] is True
        assert ledger.get(checkout_id).status == CartStatus.CHECKED_OUT
        state = await sessions.get(SESSION_ID)
        assert state.payment_status == PaymentStatus.SUCCEEDED
        assert state.error is not None


class TestSettlementPreconditions:
    async def test_expired_credentials_refused_without_charging(
        self, orchestrator, ctx, clock, processor, vault
    ):
        checkout_id = await _ready_to_pay(orchestrator, ctx)
        clock.advance(56 * 60)

        result = await orchestrator.execute_payment(ctx, checkout_id)

        assert result["error"] == "CREDENTIALS_EXPIRED"
        assert result["retryable"] is False
        assert processor.charges == []
        assert await vault.get(SESSION_ID) is None

    async def test_missing_payment_method_has_remediation(self, orchestrator, ctx, processor):
        checkout_id = await checked_out_cart(orchestrator, ctx)
        await orchestrator.create_mandate(ctx, checkout_id)

        result = await orchestrator.execute_payment(ctx, checkout_id)

        assert result["error"] == "NO_PAYMENT_METHOD"
        assert result["remediation"]
        assert processor.charges == []

    async def test_unknown_checkout(self, orchestrator, ctx, processor):
        await _ready_to_pay(orchestrator, ctx)

        result = await orchestrator.execute_payment(ctx, "does-not-exist")

        assert result["error"] == "NOT_FOUND"
        assert processor.charges == []

    async def test_stage_rejects_other_users_checkout(self, orchestrator, ctx, processor, vault, ledger):
        checkout_id = await _ready_to_pay(orchestrator, ctx)
        intruder = StageContext(session_id="sess_2", user_id="mallory@example.com")
        await orchestrator.begin_session(intruder.session_id, intruder.user_id)
        await vault.store(intruder.session_id, "pm_card_visa")

        result = await orchestrator.settlement.settle(intruder, checkout_id)

        assert result["error"] == "NOT_FOUND"
        assert processor.charges == []
        assert ledger.get(checkout_id).status == CartStatus.CHECKED_OUT

    async def test_hosted_charge_requires_cart_owner(self, orchestrator, ctx, processor):
        checkout_id = await checked_out_cart(orchestrator, ctx)

        with pytest.raises(NotFoundError):
            await orchestrator.settlement.charge_checkout(
                checkout_id, "pm_card_visa", "mallory@example.com"
            )

        assert processor.charges == []

    async def test_concurrent_settlements_charge_once(self, orchestrator, ctx, processor):
        checkout_id = await _ready_to_pay(orchestrator, ctx)

        results = await asyncio.gather(
            orchestrator.execute_payment(ctx, checkout_id),
            orchestrator.execute_payment(ctx, checkout_id),
        )

        assert len(processor.charges) == 1
        succeeded = [r for r in results if "charge_id" in r]
        rejected = [r for r in results if "error" in r]
        assert len(succeeded) == 1
        assert len(rejected) == 1
        assert rejected[0]["error"] == "INVALID_STATE"
        assert rejected[0]["retryable"] is True


class TestSettlementFailures:
    async def test_decline_records_failure_and_keeps_cart(
        self, orchestrator, ctx, processor, catalog, ledger, sessions
    ):
        checkout_id = await _ready_to_pay(orchestrator, ctx)
        processor.charge_error = _decline("Your card has insufficient funds.")

        result = await orchestrator.execute_payment(ctx, checkout_id)

        assert result["error"] == "PROCESSOR_DECLINED"
        assert result["message"] == "Your card has insufficient funds."
        assert result["retryable"] is False
        assert ledger.get(checkout_id).status == CartStatus.CHECKED_OUT
        assert catalog.get("prod_001").stock == 15
        state = await sessions.get(SESSION_ID)
        assert state.payment_status == PaymentStatus.FAILED
        assert state.error == "Your card has insufficient funds."

    async def test_unsettled_charge_status_is_a_decline(self, orchestrator, ctx, processor, ledger):
        checkout_id = await _ready_to_pay(orchestrator, ctx)
        processor.charge_status = "requires_action"

        result = await orchestrator.execute_payment(ctx, checkout_id)

        assert result["error"] == "PROCESSOR_DECLINED"
        assert ledger.get(checkout_id).status == CartStatus.CHECKED_OUT

    async def test_timeout_releases_claim_and_retry_reuses_key(
        self, orchestrator, ctx, processor, sessions, vault
    ):
        checkout_id = await _ready_to_pay(orchestrator, ctx)
        processor.charge_error = UpstreamError(
            UpstreamFailure(
                service="processor",
                kind=UpstreamFailureKind.TIMEOUT,
                message="processor request timed out",
            )
        )

        first = await orchestrator.execute_payment(ctx, checkout_id)

        assert first["error"] == "TRANSIENT_UPSTREAM_ERROR"
        assert first["retryable"] is True
        state = await sessions.get(SESSION_ID)
        assert state.stage == ProtocolStage.CREDENTIALS_REALIZED
        assert state.error is None
        assert (await vault.get(SESSION_ID)).reference == "pm_card_visa"

        processor.charge_error = None
        second = await orchestrator.execute_payment(ctx, checkout_id)

        assert second["status"] == "succeeded"
        keys = {c["idempotency_key"] for c in processor.charges}
        assert keys == {f"pay_{checkout_id}"}

    async def test_terminal_session_resets_on_next_conversation_turn(
        self, orchestrator, ctx, processor, sessions
    ):
        checkout_id = await _ready_to_pay(orchestrator, ctx)
        processor.charge_error = _decline("Your card was declined.")
        await orchestrator.execute_payment(ctx, checkout_id)

        view = await orchestrator.begin_session(ctx.session_id, ctx.user_id)

        assert view["session_id"] == SESSION_ID
        assert view["payment_status"] is None
        assert view["mandate_id"] is None
        assert view["stage"] == "idle"
