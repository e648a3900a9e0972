"""Tests for the daily lifecycle run and the ledger store operations it uses."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from domain.enums import DomainStatus, NotificationStatus, TriggeredBy
from domain.exceptions import ConflictError
from models import Domain, LifecycleEvent, Notification
from services import lifecycle_engine
from services.ledger_store import (
    activate_domain,
    clear_hold,
    place_hold,
    schedule_notifications,
    transition_domain_status,
)
from services.lifecycle_engine import advance_domain, find_due_domains, run_daily_transitions


def _events(db, domain_id):
    return (
        db.query(LifecycleEvent)
        .filter(LifecycleEvent.domain_id == domain_id)
        .order_by(LifecycleEvent.id)
        .all()
    )


# =============================================================================
# Phase transitions
# =============================================================================


class TestDailyTransitions:
    def test_expired_active_domain_enters_grace(self, db, make_customer, make_domain, now, dispatcher) -> None:
        expiry = now - timedelta(days=16)
        domain = make_domain(make_customer(), expires_at=expiry)

        summary = run_daily_transitions(db, now, dispatcher)

        db.refresh(domain)
        assert domain.status == DomainStatus.GRACE
        assert domain.grace_until == expiry + timedelta(days=15)
        assert summary["transitions_processed"] == 1
        assert summary["transitions"][0] == {
            "domain_id": domain.id,
            "fqdn": "prime.example",
            "current_status": DomainStatus.ACTIVE,
            "new_status": DomainStatus.GRACE,
            "reason": "Billing period expired",
        }

        moves = [e for e in _events(db, domain.id) if e.old_status is not None]
        assert len(moves) == 1
        assert moves[0].old_status == DomainStatus.ACTIVE
        assert moves[0].new_status == DomainStatus.GRACE
        assert moves[0].triggered_by == TriggeredBy.SCHEDULER

    def test_domain_advances_one_phase_per_run(self, db, make_customer, make_domain, now, dispatcher) -> None:
        # Expired long ago: every later deadline is also in the past once computed
        domain = make_domain(make_customer(), expires_at=now - timedelta(days=200))

        run_daily_transitions(db, now, dispatcher)
        db.refresh(domain)
        assert domain.status == DomainStatus.GRACE

        run_daily_transitions(db, now, dispatcher)
        db.refresh(domain)
        assert domain.status == DomainStatus.REDEMPTION

    def test_redemption_deadline_anchored_on_grace_deadline(
        self, db, make_customer, make_domain, now, dispatcher,
    ) -> None:
        grace_until = now - timedelta(hours=1)
        domain = make_domain(
            make_customer(),
            status=DomainStatus.GRACE,
            expires_at=grace_until - timedelta(days=15),
            grace_until=grace_until,
        )

        run_daily_transitions(db, now, dispatcher)

        db.refresh(domain)
        assert domain.status == DomainStatus.REDEMPTION
        assert domain.redemption_until == grace_until + timedelta(days=30)

    def test_domain_not_due_is_untouched(self, db, make_customer, make_domain, now, dispatcher) -> None:
        domain = make_domain(make_customer(), expires_at=now + timedelta(days=1))

        summary = run_daily_transitions(db, now, dispatcher)

        db.refresh(domain)
        assert domain.status == DomainStatus.ACTIVE
        assert summary["transitions_processed"] == 0
        assert summary["errors"] == []

    def test_release_clears_owner(self, db, make_customer, make_domain, now, dispatcher) -> None:
        domain = make_domain(
            make_customer(),
            status=DomainStatus.PENDING_DELETE,
            expires_at=now - timedelta(days=81),
            pending_delete_until=now - timedelta(days=1),
        )

        run_daily_transitions(db, now, dispatcher)

        db.refresh(domain)
        assert domain.status == DomainStatus.RELEASED
        assert domain.customer_id is None
        assert domain.suspension_reason == "Released back to inventory"

    def test_held_domain_is_not_advanced(self, db, make_customer, make_domain, now, dispatcher) -> None:
        domain = make_domain(
            make_customer(),
            status=DomainStatus.DISPUTE_HOLD,
            expires_at=now - timedelta(days=30),
        )

        summary = run_daily_transitions(db, now, dispatcher)

        db.refresh(domain)
        assert domain.status == DomainStatus.DISPUTE_HOLD
        assert summary["transitions_processed"] == 0

    def test_run_is_idempotent(self, db, make_customer, make_domain, now, dispatcher) -> None:
        domain = make_domain(make_customer(), expires_at=now - timedelta(days=1))

        first = run_daily_transitions(db, now, dispatcher)
        second = run_daily_transitions(db, now, dispatcher)

        assert first["transitions_processed"] == 1
        assert second["transitions_processed"] == 0
        db.refresh(domain)
        assert domain.status == DomainStatus.GRACE

    def test_per_domain_failure_is_reported_and_batch_continues(
        self, db, make_customer, make_domain, now, dispatcher, monkeypatch,
    ) -> None:
        customer = make_customer()
        broken = make_domain(customer, fqdn="broken.example", expires_at=now - timedelta(days=1))
        healthy = make_domain(customer, fqdn="healthy.example", expires_at=now - timedelta(days=1))
        real_advance = lifecycle_engine.advance_domain

        def flaky_advance(db, domain, expected_status, now):
            if domain.id == broken.id:
                raise OperationalError("UPDATE domains", {}, Exception("database is locked"))
            return real_advance(db, domain, expected_status, now)

        monkeypatch.setattr(lifecycle_engine, "advance_domain", flaky_advance)

        summary = run_daily_transitions(db, now, dispatcher)

        assert [t["domain_id"] for t in summary["transitions"]] == [healthy.id]
        assert len(summary["errors"]) == 1
        assert summary["errors"][0]["stage"] == DomainStatus.ACTIVE
        assert f"domain {broken.id}" in summary["errors"][0]["error"]
        db.refresh(broken)
        assert broken.status == DomainStatus.ACTIVE


class TestConcurrentRuns:
    def test_overlapping_runs_produce_one_transition(
        self, session_factory, make_customer, make_domain, now, dispatcher,
    ) -> None:
        domain = make_domain(make_customer(), expires_at=now - timedelta(days=1))

        first_session = session_factory()
        second_session = session_factory()
        try:
            # First run selects the domain, then a second run overtakes it
            stale = find_due_domains(first_session, DomainStatus.ACTIVE, now)
            assert [d.id for d in stale] == [domain.id]

            summary = run_daily_transitions(second_session, now, dispatcher)
            assert summary["transitions_processed"] == 1

            assert advance_domain(first_session, stale[0], DomainStatus.ACTIVE, now) is None
        finally:
            first_session.close()
            second_session.close()

        check = session_factory()
        try:
            moves = (
                check.query(LifecycleEvent)
                .filter(
                    LifecycleEvent.domain_id == domain.id,
                    LifecycleEvent.new_status == DomainStatus.GRACE,
                )
                .count()
            )
            assert moves == 1
        finally:
            check.close()

    def test_cas_rejects_stale_expected_status(self, db, make_customer, make_domain, now) -> None:
        domain = make_domain(make_customer(), status=DomainStatus.GRACE)

        moved = transition_domain_status(
            db, domain, DomainStatus.ACTIVE, DomainStatus.GRACE, TriggeredBy.SCHEDULER, None, now,
        )

        assert moved is False
        db.commit()
        assert len(_events(db, domain.id)) == 1

    def test_invalid_edge_raises_conflict(self, db, make_customer, make_domain, now) -> None:
        domain = make_domain(make_customer())

        with pytest.raises(ConflictError):
            transition_domain_status(
                db, domain, DomainStatus.ACTIVE, DomainStatus.AUCTION, TriggeredBy.HUMAN, None, now,
            )


# =============================================================================
# Notifications
# =============================================================================


class TestNotifications:
    def test_scheduling_is_idempotent(self, db, make_customer, make_domain, now) -> None:
        domain = make_domain(make_customer())

        created = schedule_notifications(db, domain.id, domain.expires_at, now)
        db.commit()
        again = schedule_notifications(db, domain.id, domain.expires_at, now)
        db.commit()

        assert created == 10
        assert again == 0
        assert db.query(Notification).filter(Notification.domain_id == domain.id).count() == 10

    def test_run_schedules_and_delivers_due_milestones(
        self, db, make_customer, make_domain, now, dispatcher,
    ) -> None:
        # D-14 and D-7 are due; D-3 is tomorrow
        domain = make_domain(make_customer(), expires_at=now + timedelta(days=4))

        summary = run_daily_transitions(db, now, dispatcher)

        assert summary["notifications_sent"] == 2
        assert sorted(m for _, m, _ in dispatcher.dispatched) == ["D-14", "D-7"]
        sent = (
            db.query(Notification)
            .filter(Notification.domain_id == domain.id, Notification.status == NotificationStatus.SENT)
            .all()
        )
        assert {n.milestone for n in sent} == {"D-14", "D-7"}
        assert all(n.delivered_at == now for n in sent)

    def test_sent_notifications_are_not_redelivered(
        self, db, make_customer, make_domain, now, dispatcher,
    ) -> None:
        make_domain(make_customer(), expires_at=now + timedelta(days=4))

        run_daily_transitions(db, now, dispatcher)
        second = run_daily_transitions(db, now, dispatcher)

        assert second["notifications_sent"] == 0
        assert len(dispatcher.dispatched) == 2

    def test_dispatcher_failure_does_not_fail_run(
        self, db, make_customer, make_domain, now,
    ) -> None:
        class BrokenDispatcher:
            def dispatch(self, notification, fqdn):
                raise RuntimeError("smtp down")

        make_domain(make_customer(), expires_at=now + timedelta(days=4))

        summary = run_daily_transitions(db, now, BrokenDispatcher())

        assert summary["notifications_sent"] == 2
        assert summary["errors"] == []


# =============================================================================
# Activation and holds
# =============================================================================


class TestActivation:
    def test_activate_pending_domain(self, db, make_customer, make_domain, now) -> None:
        domain = make_domain(make_customer(), status=DomainStatus.PENDING)

        assert activate_domain(db, domain, now) is True
        db.commit()

        db.refresh(domain)
        assert domain.status == DomainStatus.ACTIVE
        assert domain.activated_at == now
        assert domain.expires_at == now + timedelta(days=365)
        assert db.query(Notification).filter(Notification.domain_id == domain.id).count() == 10

    def test_activate_failed_domain(self, db, make_customer, make_domain, now) -> None:
        domain = make_domain(make_customer(), status=DomainStatus.FAILED)

        assert activate_domain(db, domain, now) is True

    def test_activate_active_domain_is_noop(self, db, make_customer, make_domain, now) -> None:
        domain = make_domain(make_customer())
        original_expiry = domain.expires_at

        assert activate_domain(db, domain, now) is False
        db.commit()

        db.refresh(domain)
        assert domain.expires_at == original_expiry


class TestHolds:
    def test_place_and_clear_hold_restores_previous_status(
        self, db, make_customer, make_domain, now,
    ) -> None:
        domain = make_domain(make_customer(), status=DomainStatus.REDEMPTION)

        assert place_hold(db, domain, DomainStatus.FRAUD_HOLD, "chargeback", now)
        db.commit()
        db.refresh(domain)
        assert domain.status == DomainStatus.FRAUD_HOLD
        assert domain.suspension_reason == "chargeback"

        assert clear_hold(db, domain, "cleared by support", now)
        db.commit()
        db.refresh(domain)
        assert domain.status == DomainStatus.REDEMPTION
        assert domain.suspension_reason is None

        triggered = [e.triggered_by for e in _events(db, domain.id)[1:]]
        assert triggered == [TriggeredBy.HUMAN, TriggeredBy.HUMAN]

    def test_released_domain_cannot_be_held(self, db, make_domain, now) -> None:
        domain = make_domain(None, status=DomainStatus.RELEASED)

        with pytest.raises(ConflictError):
            place_hold(db, domain, DomainStatus.DISPUTE_HOLD, None, now)

    def test_clear_hold_on_live_domain_conflicts(self, db, make_customer, make_domain, now) -> None:
        domain = make_domain(make_customer())

        with pytest.raises(ConflictError):
            clear_hold(db, domain, None, now)

    def test_status_matches_latest_event(self, db, make_customer, make_domain, now, dispatcher) -> None:
        domain = make_domain(make_customer(), expires_at=now - timedelta(days=1))
        run_daily_transitions(db, now, dispatcher)
        place_hold(db, db.get(Domain, domain.id), DomainStatus.UNPAID_HOLD, None, now)
        db.commit()

        db.refresh(domain)
        assert _events(db, domain.id)[-1].new_status == domain.status
