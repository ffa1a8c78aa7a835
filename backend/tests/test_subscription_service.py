import pytest
import stripe
from dateutil.relativedelta import relativedelta

from tenant_billing.models import OrganizerSubscription, SubscriptionPayment
from tenant_billing.services import stripe_service, subscription_service
from tenant_billing.services.subscription_state import LifecycleState, resolve

from conftest import (
    community_statuses,
    days,
    make_community,
    make_organizer,
    make_record,
    stripe_invoice,
    stripe_subscription,
)


class TestTrialEligibility:
    def test_fresh_organizer_is_eligible(self, db, organizer):
        record = make_record(db, organizer)
        assert subscription_service.is_trial_eligible(organizer, [record]) is True

    def test_trial_used_flag_blocks(self, db):
        organizer = make_organizer(db, trial_used=True)
        assert subscription_service.is_trial_eligible(organizer, []) is False

    @pytest.mark.parametrize(
        "fields",
        [
            {"stripe_subscription_id": "sub_old"},
            {"trial_end": None, "trial_start": None, "status": "canceled"},
            {"status": "active"},
        ],
    )
    def test_any_history_blocks(self, db, organizer, now, fields):
        record = make_record(db, organizer, **fields)
        assert subscription_service.is_trial_eligible(organizer, [record]) is False

    def test_trial_dates_block(self, db, organizer, now):
        record = make_record(db, organizer, trial_start=now - days(30), trial_end=now - days(16))
        assert subscription_service.is_trial_eligible(organizer, [record]) is False


class TestInitiate:
    def test_first_subscription_gets_processor_trial(self, db, organizer, gateway):
        result = subscription_service.initiate_subscription(db, organizer)

        gateway.create_subscription.assert_called_once()
        assert gateway.create_subscription.call_args.kwargs["trial_days"] == 14
        assert gateway.create_subscription.call_args.kwargs["price_id"] == "price_test_monthly"
        assert result.client_secret == "seti_1_secret_abc"
        assert result.trial_days == 14

        record = subscription_service.get_subscription_record(db, organizer.id)
        assert record.stripe_subscription_id == "sub_1"
        assert record.stripe_customer_id == "cus_1"
        assert record.status == "incomplete"
        db.refresh(organizer)
        assert organizer.trial_used is True

    def test_churned_organizer_never_regains_trial(self, db, organizer, gateway, now):
        make_record(
            db,
            organizer,
            status="canceled",
            stripe_customer_id="cus_1",
            stripe_subscription_id="sub_old",
            current_period_end=now - days(40),
        )
        gateway.create_subscription.return_value = stripe_subscription("incomplete", sub_id="sub_new")

        result = subscription_service.initiate_subscription(db, organizer)

        gateway.create_customer.assert_not_called()
        assert gateway.create_subscription.call_args.kwargs["trial_days"] is None
        assert result.trial_days == 0
        assert result.stripe_subscription_id == "sub_new"

    def test_double_submit_reuses_incomplete_subscription(self, db, organizer, gateway):
        make_record(db, organizer, stripe_customer_id="cus_1", stripe_subscription_id="sub_1")
        gateway.retrieve_subscription.return_value = stripe_subscription("incomplete")

        result = subscription_service.initiate_subscription(db, organizer)

        gateway.create_subscription.assert_not_called()
        assert result.reused is True
        assert result.client_secret == "seti_1_secret_abc"

    def test_gateway_failure_leaves_record_untouched(self, db, organizer, gateway):
        gateway.create_setup_intent.side_effect = stripe.APIConnectionError("network down")

        with pytest.raises(stripe.StripeError):
            subscription_service.initiate_subscription(db, organizer)
        db.rollback()

        gateway.cancel_subscription.assert_called_once_with("sub_1", at_period_end=False)
        record = subscription_service.get_subscription_record(db, organizer.id)
        assert record.stripe_subscription_id is None
        assert record.status == "incomplete"
        db.refresh(organizer)
        assert organizer.trial_used is False

    def test_concurrent_initiate_grants_at_most_one_trial(self, session_factory, gateway):
        session_a, session_b = session_factory(), session_factory()
        try:
            organizer = make_organizer(session_a)
            make_record(session_a, organizer, stripe_customer_id="cus_1")
            calls = []

            def create_subscription(customer_id, price_id, trial_days=None, metadata=None):
                sub_id = "sub_A" if not calls else "sub_B"
                calls.append((sub_id, trial_days))
                if sub_id == "sub_A":
                    # Aが Stripe 呼び出し中に B が同じ主催者で購読開始
                    other = subscription_service.get_organizer_by_user(session_b, organizer.user_id)
                    subscription_service.initiate_subscription(session_b, other)
                return stripe_subscription("incomplete", sub_id=sub_id)

            gateway.create_subscription.side_effect = create_subscription

            with pytest.raises(subscription_service.SubscriptionConflictError):
                subscription_service.initiate_subscription(session_a, organizer)

            assert calls == [("sub_A", 14), ("sub_B", None)]
            gateway.cancel_subscription.assert_called_once_with("sub_A", at_period_end=False)

            with session_factory() as check:
                record = subscription_service.get_subscription_record(check, organizer.id)
                assert record.stripe_subscription_id == "sub_B"
                assert subscription_service.is_trial_eligible(
                    subscription_service.get_organizer_by_user(check, organizer.user_id),
                    [record],
                ) is False
        finally:
            session_a.close()
            session_b.close()

    def test_lost_link_cancels_new_subscription(self, db, organizer, gateway):
        record = make_record(db, organizer, stripe_customer_id="cus_1")

        def linked_elsewhere(customer_id, metadata=None):
            db.query(OrganizerSubscription).filter_by(id=record.id).update({"stripe_subscription_id": "sub_other"})
            db.commit()
            return {"id": "seti_1", "client_secret": "seti_1_secret_abc"}

        gateway.create_setup_intent.side_effect = linked_elsewhere

        with pytest.raises(subscription_service.SubscriptionConflictError):
            subscription_service.initiate_subscription(db, organizer)

        gateway.cancel_subscription.assert_called_once_with("sub_1", at_period_end=False)
        db.refresh(record)
        assert record.stripe_subscription_id == "sub_other"
        db.refresh(organizer)
        assert organizer.trial_used is False

    def test_blocking_states(self, db, organizer, now):
        record = make_record(db, organizer, stripe_subscription_id="sub_1", status="active")
        assert subscription_service.has_blocking_subscription(record) is True

        record.status = "canceled"
        record.current_period_end = now - days(1)
        assert subscription_service.has_blocking_subscription(record) is False
        assert subscription_service.has_blocking_subscription(None) is False


class TestConfirm:
    def test_pays_open_invoice_and_activates_communities(self, db, organizer, gateway, now):
        record = make_record(db, organizer, stripe_customer_id="cus_1", stripe_subscription_id="sub_1")
        make_community(db, organizer)
        period_start, period_end = now, now + days(30)
        gateway.retrieve_subscription.side_effect = [
            stripe_subscription("incomplete", latest_invoice={"id": "in_1", "status": "open"}),
            stripe_subscription("active", period_start=period_start, period_end=period_end),
        ]

        result = subscription_service.confirm_subscription(db, organizer, record)

        gateway.pay_invoice.assert_called_once_with("in_1", "pm_default")
        assert result.invoice_paid is True
        assert result.status == "active"
        assert result.state_info.state == LifecycleState.ACTIVE
        assert result.activated_communities == 1
        assert community_statuses(db, organizer) == ["active"]

        db.refresh(record)
        assert record.placement_credits_available == 2
        assert record.placement_credits_used == 0
        assert record.credits_reset_date == period_start + relativedelta(months=1)

    def test_open_invoice_without_payment_method_is_not_paid(self, db, organizer, gateway):
        record = make_record(db, organizer, stripe_customer_id="cus_1", stripe_subscription_id="sub_1")
        gateway.get_default_payment_method.return_value = None
        gateway.retrieve_subscription.return_value = stripe_subscription(
            "incomplete", latest_invoice={"id": "in_1", "status": "open"}
        )

        with pytest.raises(subscription_service.PaymentMethodRequiredError):
            subscription_service.confirm_subscription(db, organizer, record)

        gateway.pay_invoice.assert_not_called()
        db.refresh(record)
        assert record.status == "incomplete"

    def test_trialing_subscription_needs_no_payment(self, db, organizer, gateway, now):
        record = make_record(db, organizer, stripe_customer_id="cus_1", stripe_subscription_id="sub_1")
        gateway.retrieve_subscription.return_value = stripe_subscription(
            "trialing",
            period_start=now,
            period_end=now + days(14),
            trial_start=now,
            trial_end=now + days(14),
        )

        result = subscription_service.confirm_subscription(db, organizer, record, payment_method_id="pm_card")

        gateway.set_default_payment_method.assert_called_once_with("cus_1", "sub_1", "pm_card")
        gateway.pay_invoice.assert_not_called()
        assert result.state_info.state == LifecycleState.STRIPE_TRIAL
        assert result.state_info.trial_days_remaining == 14

    def test_confirm_twice_does_not_reset_credits_again(self, db, organizer, gateway, now):
        record = make_record(db, organizer, stripe_customer_id="cus_1", stripe_subscription_id="sub_1")
        gateway.retrieve_subscription.return_value = stripe_subscription(
            "active", period_start=now, period_end=now + days(30)
        )
        subscription_service.confirm_subscription(db, organizer, record)
        record.placement_credits_used = 1
        db.commit()

        subscription_service.confirm_subscription(db, organizer, record)

        db.refresh(record)
        assert record.placement_credits_used == 1
        assert record.placement_credits_available == 2


class TestCancel:
    def test_cancel_sets_marker_and_keeps_status(self, db, organizer, gateway, now):
        period_end = now + days(12)
        record = make_record(
            db, organizer, status="active", stripe_customer_id="cus_1", stripe_subscription_id="sub_1",
            current_period_end=period_end,
        )
        gateway.cancel_subscription.return_value = stripe_subscription(
            "active", period_end=period_end, cancel_at=period_end
        )

        assert subscription_service.cancel_subscription(db, record) is True
        gateway.cancel_subscription.assert_called_once_with("sub_1", at_period_end=True)

        db.refresh(record)
        assert record.status == "active"
        assert record.cancel_at == period_end
        info = resolve(record)
        assert info.state == LifecycleState.GRACE_PERIOD
        assert info.access_expires_at == period_end

    def test_second_cancel_is_noop(self, db, organizer, gateway, now):
        record = make_record(
            db, organizer, status="active", stripe_subscription_id="sub_1", cancel_at=now + days(3),
        )
        assert subscription_service.cancel_subscription(db, record) is False
        gateway.cancel_subscription.assert_not_called()

    def test_cancel_falls_back_to_period_end(self, db, organizer, gateway, now):
        period_end = now + days(20)
        record = make_record(db, organizer, status="active", stripe_subscription_id="sub_1")
        gateway.cancel_subscription.return_value = stripe_subscription("active", period_end=period_end)

        subscription_service.cancel_subscription(db, record)

        db.refresh(record)
        assert record.cancel_at == period_end


class TestSnapshotAndVisibility:
    def test_applying_same_snapshot_twice_is_idempotent(self, db, organizer, now):
        record = make_record(db, organizer, stripe_subscription_id="sub_1")
        payload = stripe_subscription("active", period_start=now, period_end=now + days(30))
        snapshot = stripe_service.subscription_snapshot(payload)

        assert subscription_service.apply_subscription_snapshot(record, snapshot) is True
        db.commit()
        first = {c.name: getattr(record, c.name) for c in record.__table__.columns if c.name != "updated_at"}

        record.placement_credits_used = 1
        first["placement_credits_used"] = 1
        assert subscription_service.apply_subscription_snapshot(record, snapshot) is False
        db.commit()
        second = {c.name: getattr(record, c.name) for c in record.__table__.columns if c.name != "updated_at"}
        assert first == second

    def test_grace_period_rollover_grants_no_credits(self, db, organizer, now):
        record = make_record(
            db, organizer, status="active", stripe_subscription_id="sub_1",
            current_period_start=now - days(30),
        )
        snapshot = stripe_service.subscription_snapshot(
            stripe_subscription("canceled", period_start=now, period_end=now + days(30))
        )
        assert subscription_service.apply_subscription_snapshot(record, snapshot) is False
        assert record.placement_credits_available == 0

    def test_set_resource_status_only_touches_mismatched_rows(self, db, organizer):
        make_community(db, organizer, name="a", status="active")
        make_community(db, organizer, name="b", status="draft")
        other = make_organizer(db, user_id="user-2", email="other@example.com")
        make_community(db, other, name="c", status="active")

        assert subscription_service.set_resource_status(db, organizer.id, "draft") == 1
        db.commit()
        assert community_statuses(db, organizer) == ["draft", "draft"]
        assert community_statuses(db, other) == ["active"]

    def test_set_resource_status_rejects_unknown_value(self, db, organizer):
        with pytest.raises(ValueError):
            subscription_service.set_resource_status(db, organizer.id, "archived")

    def test_reconcile_drafts_communities_of_ended_trial(self, db, organizer, now):
        record = make_record(db, organizer, created_at=now - days(15))
        make_community(db, organizer, status="active")

        assert subscription_service.reconcile_visibility(db, record) == 1
        assert community_statuses(db, organizer) == ["draft"]

    def test_reconcile_leaves_platform_trial_alone(self, db, organizer, now):
        record = make_record(db, organizer, created_at=now - days(2))
        make_community(db, organizer, status="draft")

        assert subscription_service.reconcile_visibility(db, record) == 0
        assert community_statuses(db, organizer) == ["draft"]


class TestInvoiceHandlers:
    def test_payment_failure_moves_active_to_past_due(self, db, organizer):
        record = make_record(db, organizer, status="active", stripe_subscription_id="sub_1")

        assert subscription_service.handle_invoice_payment_failed(db, stripe_invoice(amount_paid=0)) is True
        assert subscription_service.handle_invoice_payment_failed(db, stripe_invoice(amount_paid=0)) is True

        db.refresh(record)
        assert record.status == "past_due"
        payments = db.query(SubscriptionPayment).filter(SubscriptionPayment.subscription_id == record.id).all()
        assert [p.status for p in payments] == ["failed"]

    def test_first_invoice_failure_keeps_incomplete(self, db, organizer):
        record = make_record(db, organizer, status="incomplete", stripe_subscription_id="sub_1")

        subscription_service.handle_invoice_payment_failed(db, stripe_invoice(amount_paid=0))

        db.refresh(record)
        assert record.status == "incomplete"

    def test_payment_success_records_payment_and_refreshes(self, db, organizer, gateway, now):
        record = make_record(db, organizer, status="past_due", stripe_subscription_id="sub_1")
        gateway.retrieve_subscription.return_value = stripe_subscription(
            "active", period_start=now, period_end=now + days(30)
        )
        invoice = stripe_invoice(period_start=now, period_end=now + days(30))

        assert subscription_service.handle_invoice_payment_succeeded(db, invoice) is True

        db.refresh(record)
        assert record.status == "active"
        assert record.placement_credits_available == 2
        payment = db.query(SubscriptionPayment).one()
        assert payment.amount_paid == 2900
        assert payment.currency == "CAD"
        assert payment.billing_period_start == now

    def test_unknown_subscription_is_skipped(self, db, gateway):
        assert subscription_service.handle_invoice_payment_succeeded(db, stripe_invoice(sub_id="sub_x")) is False
        gateway.retrieve_subscription.assert_not_called()
