"""Reconciliation controller tests (webhook push path and session pull path)"""
import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import AuthorizationFailure, PersistenceFailure, UpstreamFailure, ValidationFailure
from app.db.task_queue import RESYNC_USER_CACHE, get_task_status, pop_task
from app.models import Base
from app.models.enums import PaymentStatus, SubscriptionStatus, UserSubscriptionStatus, user_status_for
from app.models.payment import Payment, PaymentRefund
from app.models.stripe_event import StripeEvent
from app.models.subscription import Subscription, as_utc
from app.models.user import User
from app.services.event_store import get_stripe_event
from app.services.reconciliation import ALREADY_PROCESSED, APPLIED, IGNORED, REJECTED, SKIPPED
from app.tasks.cache_resync import process_resync_task

from stripe_payloads import (
    charge_payload, checkout_session_payload, dispute_payload, now_utc, payment_intent_payload,
    refund_payload, stripe_event, subscription_payload
)


def apply(controller, db, event):
    return controller.apply_provider_event(event["type"], event["id"], event, db)


def dump_tables(db):
    """Every row of every table, in primary key order"""
    db.expire_all()
    return {
        table.name: [
            tuple(row)
            for row in db.execute(table.select().order_by(*table.primary_key.columns)).all()
        ]
        for table in Base.metadata.sorted_tables
    }


def assert_cache_consistent(db, user_id):
    db.expire_all()
    user = db.get(User, user_id)
    current = user.current_subscription
    expected = user_status_for(current.status) if current else UserSubscriptionStatus.NONE
    assert user.subscription_status == expected


@pytest.fixture
def checkout(fake_gateway, test_user):
    """A paid checkout session for test_user and the subscription it created"""
    fake_gateway.add_subscription(subscription_payload(user_id=test_user.id))
    return fake_gateway.add_session(checkout_session_payload(user_id=test_user.id))


@pytest.fixture
def checkout_event(checkout):
    return stripe_event("checkout.session.completed", checkout, event_id="evt_checkout")


@pytest.mark.critical
class TestCheckoutCompleted:

    def test_creates_subscription_payment_and_cache(self, controller, db_session, test_user, checkout_event):
        assert apply(controller, db_session, checkout_event) == APPLIED

        subscription = db_session.query(Subscription).one()
        assert subscription.user_id == test_user.id
        assert subscription.plan == "monthly"
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.stripe_subscription_id == "sub_test123"

        payment = db_session.query(Payment).one()
        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.amount == Decimal("9.99")
        assert payment.subscription_id == subscription.id
        assert payment.has_event("evt_checkout")

        user = db_session.get(User, test_user.id)
        assert user.stripe_customer_id == "cus_test123"
        assert user.subscription_status == UserSubscriptionStatus.ACTIVE
        assert user.subscription_id == subscription.id
        assert get_stripe_event("evt_checkout", db_session).processed

    def test_redelivery_changes_nothing(self, controller, db_session, mock_redis, checkout_event):
        apply(controller, db_session, checkout_event)
        before = dump_tables(db_session)

        assert apply(controller, db_session, checkout_event) == ALREADY_PROCESSED
        assert dump_tables(db_session) == before

        # Without the cache the ledger row still answers
        mock_redis.flushall()
        assert apply(controller, db_session, checkout_event) == ALREADY_PROCESSED
        assert dump_tables(db_session) == before

        assert db_session.query(Subscription).count() == 1
        assert db_session.query(Payment).count() == 1
        assert db_session.query(StripeEvent).count() == 1

    def test_unknown_user_is_skipped(self, controller, db_session, fake_gateway):
        session = fake_gateway.add_session(checkout_session_payload(user_id=424242, customer="cus_nobody"))
        event = stripe_event("checkout.session.completed", session)

        assert apply(controller, db_session, event) == SKIPPED
        assert db_session.query(Subscription).count() == 0
        assert get_stripe_event(event["id"], db_session).processed

    def test_subscription_of_another_user_is_rejected(self, controller, db_session, fake_gateway,
                                                      test_user, test_user_2):
        fake_gateway.add_subscription(subscription_payload(user_id=test_user_2.id))
        session = fake_gateway.add_session(checkout_session_payload(user_id=test_user.id))
        event = stripe_event("checkout.session.completed", session)

        assert apply(controller, db_session, event) == REJECTED
        assert db_session.query(Subscription).count() == 0
        assert db_session.get(User, test_user.id).stripe_customer_id is None
        assert "UNAUTHORIZED_SUBSCRIPTION" in get_stripe_event(event["id"], db_session).error_message


@pytest.mark.critical
class TestPushPullConvergence:

    def _state(self, db):
        db.expire_all()
        subscription = db.query(Subscription).one()
        payment = db.query(Payment).one()
        user = db.get(User, subscription.user_id)
        return (
            subscription.stripe_subscription_id,
            subscription.plan,
            subscription.status,
            as_utc(subscription.end_date),
            subscription.amount,
            payment.status,
            payment.amount,
            payment.stripe_checkout_session_id,
            user.subscription_status,
            user.subscription_id,
        )

    def test_push_then_pull(self, controller, db_session, test_user, checkout_event):
        apply(controller, db_session, checkout_event)
        after_push = self._state(db_session)

        controller.sync_from_session(test_user.id, "cs_test123", db_session)
        assert self._state(db_session) == after_push

    def test_pull_then_push(self, controller, db_session, test_user, checkout_event):
        controller.sync_from_session(test_user.id, "cs_test123", db_session)
        after_pull = self._state(db_session)

        assert apply(controller, db_session, checkout_event) == APPLIED
        assert self._state(db_session) == after_pull

    def test_pull_twice(self, controller, db_session, test_user, checkout):
        controller.sync_from_session(test_user.id, "cs_test123", db_session)
        controller.sync_from_session(test_user.id, "cs_test123", db_session)

        assert db_session.query(Subscription).count() == 1
        assert db_session.query(Payment).count() == 1


@pytest.mark.critical
class TestSubscriptionEvents:

    def test_subscription_created(self, controller, db_session, test_user):
        event = stripe_event("customer.subscription.created", subscription_payload(user_id=test_user.id))

        assert apply(controller, db_session, event) == APPLIED
        assert db_session.get(User, test_user.id).subscription_status == UserSubscriptionStatus.ACTIVE

    def test_subscription_found_by_customer(self, controller, db_session, test_user):
        test_user.stripe_customer_id = "cus_test123"
        db_session.commit()
        event = stripe_event("customer.subscription.created", subscription_payload(user_id=None))

        assert apply(controller, db_session, event) == APPLIED
        assert db_session.query(Subscription).one().user_id == test_user.id

    def test_older_event_does_not_overwrite_newer(self, controller, db_session, test_user):
        t0 = now_utc()
        newer = stripe_event("customer.subscription.updated", subscription_payload(user_id=test_user.id),
                             created=t0 + timedelta(seconds=10))
        older = stripe_event("customer.subscription.updated",
                             subscription_payload(user_id=test_user.id, status="past_due"), created=t0)

        assert apply(controller, db_session, newer) == APPLIED
        assert apply(controller, db_session, older) == SKIPPED

        assert db_session.query(Subscription).one().status == SubscriptionStatus.ACTIVE
        assert db_session.get(User, test_user.id).subscription_status == UserSubscriptionStatus.ACTIVE
        assert get_stripe_event(older["id"], db_session).processed

    def test_deleted(self, controller, db_session, test_user):
        t0 = now_utc()
        apply(controller, db_session, stripe_event(
            "customer.subscription.created", subscription_payload(user_id=test_user.id), created=t0
        ))
        deleted = stripe_event("customer.subscription.deleted",
                               subscription_payload(user_id=test_user.id, status="canceled", canceled_at=t0),
                               created=t0 + timedelta(seconds=1))

        assert apply(controller, db_session, deleted) == APPLIED
        assert db_session.query(Subscription).one().status == SubscriptionStatus.CANCELLED
        user = db_session.get(User, test_user.id)
        assert user.subscription_status == UserSubscriptionStatus.CANCELLED
        assert not user.has_active_subscription()

    def test_deleted_unknown_subscription_is_skipped(self, controller, db_session):
        event = stripe_event("customer.subscription.deleted", subscription_payload(sub_id="sub_unknown"))
        assert apply(controller, db_session, event) == SKIPPED

    def test_unknown_status_is_rejected(self, controller, db_session, test_user):
        event = stripe_event("customer.subscription.updated",
                             subscription_payload(user_id=test_user.id, status="brand_new_status"))

        assert apply(controller, db_session, event) == REJECTED
        stored = get_stripe_event(event["id"], db_session)
        assert stored.processed
        assert "UNKNOWN_SUBSCRIPTION_STATUS" in stored.error_message
        assert db_session.query(Subscription).count() == 0

    def test_cache_follows_every_event(self, controller, db_session, test_user, checkout_event):
        t0 = now_utc()
        events = [
            checkout_event,
            stripe_event("customer.subscription.updated",
                         subscription_payload(user_id=test_user.id, status="past_due"), created=t0),
            stripe_event("customer.subscription.updated",
                         subscription_payload(user_id=test_user.id, status="active", cancel_at_period_end=True),
                         created=t0 + timedelta(seconds=1)),
            stripe_event("customer.subscription.deleted",
                         subscription_payload(user_id=test_user.id, status="canceled"),
                         created=t0 + timedelta(seconds=2)),
        ]
        for event in events:
            apply(controller, db_session, event)
            assert_cache_consistent(db_session, test_user.id)


@pytest.mark.critical
class TestPaymentEvents:

    def _pay(self, controller, db_session, user, amount=10000):
        event = stripe_event("payment_intent.succeeded", payment_intent_payload(user_id=user.id, amount=amount))
        assert apply(controller, db_session, event) == APPLIED
        return db_session.query(Payment).one()

    def test_payment_succeeded(self, controller, db_session, test_user):
        payment = self._pay(controller, db_session, test_user)
        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.amount == Decimal("100.00")

    def test_failure_for_unknown_intent_creates_nothing(self, controller, db_session):
        event = stripe_event("payment_intent.payment_failed",
                             payment_intent_payload(intent_id="pi_unknown", error_message="Card declined"))

        assert apply(controller, db_session, event) == SKIPPED
        assert db_session.query(Payment).count() == 0
        assert get_stripe_event(event["id"], db_session).processed

    def test_two_refunds_cover_payment(self, controller, db_session, test_user):
        self._pay(controller, db_session, test_user)

        apply(controller, db_session, stripe_event("refund.created", refund_payload("re_1", amount=6000)))
        payment = db_session.query(Payment).one()
        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.net_amount == Decimal("40.00")

        apply(controller, db_session, stripe_event("refund.created", refund_payload("re_2", amount=4000)))
        db_session.expire_all()
        payment = db_session.query(Payment).one()
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.net_amount == Decimal("0.00")

    def test_charge_refunded_and_refund_created_count_once(self, controller, db_session, test_user):
        self._pay(controller, db_session, test_user)
        refund = refund_payload("re_1", amount=3000)

        assert apply(controller, db_session, stripe_event("charge.refunded", charge_payload(refunds=[refund]))) == APPLIED
        assert apply(controller, db_session, stripe_event("refund.created", refund)) == APPLIED

        assert db_session.query(PaymentRefund).count() == 1
        assert db_session.query(Payment).one().net_amount == Decimal("70.00")

    def test_charge_refunded_without_refund_list(self, controller, db_session, test_user):
        self._pay(controller, db_session, test_user)

        for _ in range(2):
            apply(controller, db_session, stripe_event("charge.refunded", charge_payload(amount_refunded=2500)))

        assert db_session.query(PaymentRefund).count() == 1
        assert db_session.query(Payment).one().total_refunded == Decimal("25.00")

    @pytest.mark.parametrize("amount", [5000, 3000])
    def test_charge_total_then_refund_created_count_once(self, controller, db_session, test_user, amount):
        self._pay(controller, db_session, test_user)

        apply(controller, db_session, stripe_event("charge.refunded", charge_payload(amount_refunded=amount)))
        apply(controller, db_session, stripe_event("refund.created", refund_payload("re_1", amount=amount)))

        db_session.expire_all()
        payment = db_session.query(Payment).one()
        assert [r.stripe_refund_id for r in payment.refunds] == ["re_1"]
        assert payment.total_refunded == Decimal(amount) / 100
        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.refunded_at is None

    def test_refund_created_then_charge_total(self, controller, db_session, test_user):
        self._pay(controller, db_session, test_user)

        apply(controller, db_session, stripe_event("refund.created", refund_payload("re_1", amount=3000)))
        apply(controller, db_session, stripe_event("charge.refunded", charge_payload(amount_refunded=3000)))

        assert db_session.query(PaymentRefund).count() == 1
        assert db_session.query(Payment).one().net_amount == Decimal("70.00")

    def test_charge_total_covers_several_refunds(self, controller, db_session, test_user):
        self._pay(controller, db_session, test_user)

        apply(controller, db_session, stripe_event("charge.refunded", charge_payload(amount_refunded=7000)))
        apply(controller, db_session, stripe_event("refund.created", refund_payload("re_1", amount=3000)))

        db_session.expire_all()
        payment = db_session.query(Payment).one()
        assert payment.total_refunded == Decimal("70.00")
        assert sum(r.amount for r in payment.provisional_refunds) == Decimal("40.00")

        apply(controller, db_session, stripe_event("refund.created", refund_payload("re_2", amount=4000)))

        db_session.expire_all()
        payment = db_session.query(Payment).one()
        assert payment.total_refunded == Decimal("70.00")
        assert payment.provisional_refunds == []
        assert payment.status == PaymentStatus.SUCCEEDED

    def test_refunds_of_30_40_30(self, controller, db_session, test_user):
        self._pay(controller, db_session, test_user)

        apply(controller, db_session, stripe_event("refund.created", refund_payload("re_1", amount=3000)))
        apply(controller, db_session, stripe_event("refund.created", refund_payload("re_2", amount=4000)))
        db_session.expire_all()
        payment = db_session.query(Payment).one()
        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.net_amount == Decimal("30.00")
        assert payment.refunded_at is None

        apply(controller, db_session, stripe_event("refund.created", refund_payload("re_3", amount=3000)))
        db_session.expire_all()
        payment = db_session.query(Payment).one()
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.net_amount == Decimal("0.00")
        assert payment.refunded_at is not None

    def test_refund_for_unknown_payment_is_skipped(self, controller, db_session):
        event = stripe_event("refund.created", refund_payload(payment_intent="pi_unknown", charge="ch_unknown"))
        assert apply(controller, db_session, event) == SKIPPED

    def test_dispute(self, controller, db_session, test_user):
        self._pay(controller, db_session, test_user)

        assert apply(controller, db_session, stripe_event("charge.dispute.created", dispute_payload())) == APPLIED
        payment = db_session.query(Payment).one()
        assert payment.status == PaymentStatus.DISPUTED
        assert payment.disputes[0].stripe_dispute_id == "dp_test123"


@pytest.mark.high
class TestEventDispatch:

    def test_unhandled_type_is_ignored(self, controller, db_session):
        event = stripe_event("customer.created", {"id": "cus_new", "object": "customer"})

        assert apply(controller, db_session, event) == IGNORED
        assert get_stripe_event(event["id"], db_session).processed
        assert db_session.query(Subscription).count() == 0

    def test_invoice_events_are_acknowledged(self, controller, db_session):
        event = stripe_event("invoice.payment_succeeded",
                             {"id": "in_test123", "object": "invoice", "customer": "cus_test123", "amount_paid": 999})
        assert apply(controller, db_session, event) == APPLIED

    def test_event_without_data_object_is_rejected(self, controller, db_session):
        event = stripe_event("payment_intent.succeeded", None)
        assert apply(controller, db_session, event) == REJECTED

    def test_event_traced_with_outcome(self, controller, db_session):
        exporter = InMemorySpanExporter()
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        event = stripe_event("customer.created", {"id": "cus_new", "object": "customer"})

        with patch("app.core.otel.tracer", provider.get_tracer("test")):
            apply(controller, db_session, event)

        span = exporter.get_finished_spans()[0]
        assert span.name == "stripe.event.apply"
        assert span.attributes["billing.event_id"] == event["id"]
        assert span.attributes["billing.outcome"] == IGNORED


@pytest.mark.critical
class TestRetryableFailures:

    def test_upstream_failure_leaves_event_unprocessed(self, controller, db_session, fake_gateway,
                                                      test_user, checkout_event):
        fake_gateway.fail_with = UpstreamFailure("Stripe unavailable during subscription retrieval")

        with pytest.raises(UpstreamFailure):
            apply(controller, db_session, checkout_event)

        stored = get_stripe_event("evt_checkout", db_session)
        assert not stored.processed
        assert stored.error_message == "Stripe unavailable during subscription retrieval"
        assert db_session.query(Subscription).count() == 0
        assert db_session.get(User, test_user.id).stripe_customer_id is None

        # Stripe retries once we are back
        fake_gateway.fail_with = None
        assert apply(controller, db_session, checkout_event) == APPLIED
        assert get_stripe_event("evt_checkout", db_session).processed

    def test_user_cache_failure_queues_resync(self, controller, db_session, mock_redis,
                                              test_user, checkout_event):
        with patch("app.services.user_projection.reflect", side_effect=SQLAlchemyError("users row locked")):
            with pytest.raises(PersistenceFailure):
                apply(controller, db_session, checkout_event)

        # Subscription and payment committed, user cache not
        assert db_session.query(Subscription).count() == 1
        assert db_session.query(Payment).count() == 1
        assert db_session.get(User, test_user.id).subscription_status == UserSubscriptionStatus.NONE
        assert not get_stripe_event("evt_checkout", db_session).processed

        assert mock_redis.llen(f"billing:task:queue:{RESYNC_USER_CACHE}") == 1
        task = pop_task(RESYNC_USER_CACHE)
        assert task["payload"]["user_id"] == test_user.id

        assert process_resync_task(task, session_factory=lambda: db_session)
        assert get_task_status(task["task_id"])["status"] == "completed"
        assert db_session.get(User, test_user.id).subscription_status == UserSubscriptionStatus.ACTIVE
        assert_cache_consistent(db_session, test_user.id)

    def test_redelivery_after_cache_failure_converges(self, controller, db_session, test_user, checkout_event):
        with patch("app.services.user_projection.reflect", side_effect=SQLAlchemyError("users row locked")):
            with pytest.raises(PersistenceFailure):
                apply(controller, db_session, checkout_event)

        assert apply(controller, db_session, checkout_event) == APPLIED
        assert db_session.query(Subscription).count() == 1
        assert db_session.query(Payment).count() == 1
        assert db_session.get(User, test_user.id).subscription_status == UserSubscriptionStatus.ACTIVE


@pytest.mark.critical
class TestSyncFromSession:

    def test_returns_summary(self, controller, db_session, test_user, checkout):
        result = controller.sync_from_session(test_user.id, "cs_test123", db_session)

        assert result["user"]["has_active_subscription"] is True
        assert result["subscription"]["id"] == "sub_test123"
        assert result["subscription"]["status"] == "active"
        assert result["subscription"]["plan"] == "monthly"
        assert result["session"] == {
            "id": "cs_test123",
            "payment_status": "paid",
            "amount_total": 9.99,
            "currency": "EUR",
        }

    def test_session_of_another_user(self, controller, db_session, fake_gateway, test_user, test_user_2):
        fake_gateway.add_subscription(subscription_payload(user_id=test_user_2.id))
        fake_gateway.add_session(checkout_session_payload(user_id=test_user_2.id))

        with pytest.raises(AuthorizationFailure) as exc_info:
            controller.sync_from_session(test_user.id, "cs_test123", db_session)

        assert exc_info.value.code == "UNAUTHORIZED_SESSION"
        assert ("subscription", "sub_test123") not in fake_gateway.calls
        assert db_session.query(Subscription).count() == 0

    def test_unpaid_session(self, controller, db_session, fake_gateway, test_user):
        fake_gateway.add_session(checkout_session_payload(user_id=test_user.id, payment_status="unpaid"))

        with pytest.raises(ValidationFailure) as exc_info:
            controller.sync_from_session(test_user.id, "cs_test123", db_session)
        assert exc_info.value.code == "PAYMENT_NOT_CONFIRMED"

    def test_session_without_subscription(self, controller, db_session, fake_gateway, test_user):
        fake_gateway.add_session(checkout_session_payload(user_id=test_user.id, subscription=None))

        with pytest.raises(ValidationFailure) as exc_info:
            controller.sync_from_session(test_user.id, "cs_test123", db_session)
        assert exc_info.value.code == "NO_SUBSCRIPTION_FOUND"

    def test_unknown_session(self, controller, db_session, test_user):
        with pytest.raises(ValidationFailure) as exc_info:
            controller.sync_from_session(test_user.id, "cs_missing", db_session)
        assert exc_info.value.code == "STRIPE_RESOURCE_MISSING"

    def test_stripe_unavailable(self, controller, db_session, fake_gateway, test_user, checkout):
        fake_gateway.fail_with = UpstreamFailure("Stripe unavailable during session retrieval")

        with pytest.raises(UpstreamFailure):
            controller.sync_from_session(test_user.id, "cs_test123", db_session)
        assert db_session.query(Subscription).count() == 0
