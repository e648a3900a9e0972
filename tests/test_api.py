"""HTTP-level tests for the FastAPI routes."""

import hashlib
import hmac
import json
from datetime import timedelta

import pytest

from config import settings
from domain.enums import DomainStatus
from models import Customer, PendingOrder, Plan
from services import payment_capture


def capture_payload(event_id="WH-1", order_id="ORDER-1"):
    return {
        "id": event_id,
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAP-1",
            "status": "COMPLETED",
            "amount": {"value": "95.00", "currency_code": "USD"},
            "supplementary_data": {"related_ids": {"order_id": order_id}},
        },
    }


class TestHealth:
    def test_root(self, client) -> None:
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, client) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


# =============================================================================
# Webhooks
# =============================================================================


class TestWebhookRoute:
    def test_capture_then_replay(self, client, make_pending_order) -> None:
        make_pending_order()

        first = client.post("/api/v1/webhooks/paypal", json=capture_payload())
        second = client.post("/api/v1/webhooks/paypal", json=capture_payload())

        assert first.status_code == 200
        body = first.json()
        assert body["success"] is True
        assert body["domain_status"] == DomainStatus.ACTIVE
        assert "error" not in body
        assert second.status_code == 200
        assert second.json() == {"success": True, "message": "Event already processed"}

    def test_unknown_order_is_404(self, client) -> None:
        response = client.post("/webhooks/paypal", json=capture_payload(order_id="NOPE"))

        assert response.status_code == 404
        assert response.json()["success"] is False
        assert "NOPE" in response.json()["error"]

    def test_malformed_payload_is_400(self, client) -> None:
        response = client.post(
            "/webhooks/paypal",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_signature_required_when_secret_configured(self, client, make_pending_order, monkeypatch) -> None:
        monkeypatch.setattr(settings, "PAYPAL_WEBHOOK_SECRET", "whsec")
        make_pending_order()
        body = json.dumps(capture_payload()).encode()

        unsigned = client.post("/webhooks/paypal", content=body)
        assert unsigned.status_code == 401

        bad = client.post("/webhooks/paypal", content=body, headers={"paypal-transmission-sig": "deadbeef"})
        assert bad.status_code == 401

        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
        signed = client.post(
            "/webhooks/paypal",
            content=body,
            headers={"paypal-transmission-sig": f"sha256={signature}"},
        )
        assert signed.status_code == 200
        assert signed.json()["success"] is True

    def test_unrecorded_store_conflict_is_500_and_redeliverable(
        self, client, session_factory, make_pending_order, monkeypatch,
    ) -> None:
        make_pending_order()

        def racing_resolve(session, user_id, email):
            rival = session_factory()
            rival.add(Customer(user_id=user_id, email=email))
            rival.commit()
            rival.close()
            customer = Customer(user_id=user_id, email=email)
            session.add(customer)
            session.flush()
            return customer

        monkeypatch.setattr(payment_capture, "resolve_customer", racing_resolve)

        failed = client.post("/api/v1/webhooks/paypal", json=capture_payload())

        assert failed.status_code == 500
        assert failed.json()["success"] is False

        monkeypatch.undo()
        redelivered = client.post("/api/v1/webhooks/paypal", json=capture_payload())
        assert redelivered.json()["domain_status"] == DomainStatus.ACTIVE


# =============================================================================
# Scheduled triggers
# =============================================================================


class TestLifecycleRoute:
    def test_run_advances_expired_domain(self, client, make_customer, make_domain, now, operator_headers) -> None:
        domain = make_domain(make_customer(), expires_at=now - timedelta(days=2))

        response = client.post("/api/v1/lifecycle/run", headers=operator_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["transitions_processed"] == 1
        assert body["transitions"][0]["domain_id"] == domain.id
        assert body["transitions"][0]["new_status"] == DomainStatus.GRACE

        events = client.get(f"/api/v1/domains/{domain.id}/events").json()
        assert [e["new_status"] for e in events] == [DomainStatus.ACTIVE, DomainStatus.GRACE]
        assert events[-1]["triggered_by"] == "scheduler"

    def test_simulated_time_walks_the_phases(
        self, client, clock, make_customer, make_domain, now, operator_headers,
    ) -> None:
        domain = make_domain(make_customer(), expires_at=now + timedelta(days=1))

        assert client.post("/lifecycle/run", headers=operator_headers).json()["transitions_processed"] == 0

        statuses = []
        for days in (2, 15, 30, 15, 15, 5):
            clock.advance(days=days, seconds=1)
            client.post("/lifecycle/run", headers=operator_headers)
            statuses.append(client.get(f"/domains/{domain.id}").json()["status"])

        assert statuses == [
            DomainStatus.GRACE,
            DomainStatus.REDEMPTION,
            DomainStatus.REGISTRY_HOLD,
            DomainStatus.AUCTION,
            DomainStatus.PENDING_DELETE,
            DomainStatus.RELEASED,
        ]
        assert client.get(f"/domains/{domain.id}").json()["customer_id"] is None


class TestReconciliationRoutes:
    def test_run_and_list(self, client, gateway, operator_headers) -> None:
        gateway.add_transaction("TXN-GHOST", "12.00")

        run = client.post("/api/v1/reconciliation/run", headers=operator_headers)

        assert run.status_code == 200
        assert run.json()["success"] is True
        assert run.json()["summary"]["unresolved"] == 1

        runs = client.get("/api/v1/reconciliation/runs", headers=operator_headers).json()
        assert len(runs) == 1
        assert runs[0]["status"] == "completed"

        discrepancies = client.get("/api/v1/reconciliation/discrepancies", headers=operator_headers).json()
        assert [d["discrepancy_type"] for d in discrepancies] == ["missing_in_db"]

    def test_explicit_window(self, client, now, operator_headers) -> None:
        start = (now - timedelta(hours=6)).isoformat() + "Z"
        end = now.isoformat() + "Z"

        response = client.post(
            "/reconciliation/run",
            json={"window_start": start, "window_end": end},
            headers=operator_headers,
        )

        assert response.status_code == 200
        run = client.get("/reconciliation/runs", headers=operator_headers).json()[0]
        assert run["window_start"].startswith((now - timedelta(hours=6)).isoformat())

    def test_inverted_window_is_400(self, client, now, operator_headers) -> None:
        response = client.post(
            "/reconciliation/run",
            json={"window_start": now.isoformat(), "window_end": (now - timedelta(hours=1)).isoformat()},
            headers=operator_headers,
        )

        assert response.status_code == 400


class TestOperatorAuth:
    def test_lifecycle_run_requires_token(self, client, make_customer, make_domain, now) -> None:
        domain = make_domain(make_customer(), expires_at=now - timedelta(days=2))

        response = client.post("/api/v1/lifecycle/run")

        assert response.status_code == 401
        assert client.get(f"/api/v1/domains/{domain.id}").json()["status"] == DomainStatus.ACTIVE

    def test_customer_token_cannot_trigger_runs(self, client, auth_headers) -> None:
        headers = auth_headers("user-9")

        assert client.post("/api/v1/lifecycle/run", headers=headers).status_code == 403
        assert client.post("/api/v1/reconciliation/run", headers=headers).status_code == 403
        assert client.get("/api/v1/reconciliation/runs", headers=headers).status_code == 403

    def test_hold_requires_operator(self, client, auth_headers, make_customer, make_domain) -> None:
        domain = make_domain(make_customer())

        anonymous = client.post(f"/api/v1/domains/{domain.id}/hold", json={"hold": "dispute_hold"})
        customer = client.post(
            f"/api/v1/domains/{domain.id}/hold",
            json={"hold": "dispute_hold"},
            headers=auth_headers("user-1"),
        )

        assert anonymous.status_code == 401
        assert customer.status_code == 403
        assert client.get(f"/api/v1/domains/{domain.id}").json()["status"] == DomainStatus.ACTIVE

    def test_admin_role_may_place_and_clear_hold(self, client, make_customer, make_domain) -> None:
        from routes.auth import create_access_token

        domain = make_domain(make_customer())
        headers = {"Authorization": f"Bearer {create_access_token({'sub': 'staff-1', 'role': 'admin'})}"}

        held = client.post(f"/api/v1/domains/{domain.id}/hold", json={"hold": "fraud_hold"}, headers=headers)
        cleared = client.post(f"/api/v1/domains/{domain.id}/clear-hold", headers=headers)

        assert held.status_code == 200
        assert cleared.status_code == 200
        assert cleared.json()["status"] == DomainStatus.ACTIVE


# =============================================================================
# Customer-facing routes
# =============================================================================


class TestCheckoutRoute:
    def test_requires_auth(self, client) -> None:
        response = client.post("/api/v1/checkout/orders", json={"fqdn": "new.example", "amount": "95.00"})
        assert response.status_code == 401

    def test_creates_pending_order(self, client, auth_headers, db) -> None:
        response = client.post(
            "/api/v1/checkout/orders",
            json={"fqdn": "New.Example", "amount": "95.00"},
            headers=auth_headers("user-9", "buyer@example.com"),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["dev_mode"] is True
        assert body["order_id"].startswith("MOCK-")
        pending = db.query(PendingOrder).one()
        assert pending.fqdn == "new.example"
        assert pending.user_id == "user-9"
        assert pending.email == "buyer@example.com"

    def test_taken_fqdn_conflicts(self, client, auth_headers, make_customer, make_domain) -> None:
        make_domain(make_customer(), fqdn="taken.example", status=DomainStatus.GRACE)

        response = client.post(
            "/api/v1/checkout/orders",
            json={"fqdn": "taken.example", "amount": "95.00"},
            headers=auth_headers("user-9"),
        )

        assert response.status_code == 409

    def test_open_checkout_reserves_fqdn_for_its_buyer(self, client, auth_headers) -> None:
        order = {"fqdn": "new.example", "amount": "95.00"}

        first = client.post("/api/v1/checkout/orders", json=order, headers=auth_headers("alice"))
        rival = client.post("/api/v1/checkout/orders", json=order, headers=auth_headers("bob"))
        retry = client.post("/api/v1/checkout/orders", json=order, headers=auth_headers("alice"))

        assert first.status_code == 200
        assert rival.status_code == 409
        assert "reserved" in rival.json()["error"]
        assert retry.status_code == 200

    def test_stale_checkout_no_longer_reserves(self, client, clock, auth_headers) -> None:
        order = {"fqdn": "new.example", "amount": "95.00"}
        client.post("/api/v1/checkout/orders", json=order, headers=auth_headers("alice"))

        clock.advance(minutes=settings.CHECKOUT_HOLD_MINUTES + 1)
        rival = client.post("/api/v1/checkout/orders", json=order, headers=auth_headers("bob"))

        assert rival.status_code == 200

    def test_subscription_checkout_then_activation(self, client, auth_headers, gateway, db) -> None:
        db.add(Plan(code="prime", name="Prime", billing_interval="month"))
        db.commit()

        response = client.post(
            "/api/v1/checkout/subscriptions",
            json={
                "fqdn": "Sub.Example",
                "amount": "9.99",
                "plan_code": "prime",
                "processor_plan_id": "P-PRIME",
            },
            headers=auth_headers("user-9", "buyer@example.com"),
        )

        assert response.status_code == 200
        body = response.json()
        subscription_id = body["subscription_id"]
        assert subscription_id.startswith("MOCK-SUB-")
        assert body["dev_mode"] is True
        assert gateway.subscriptions[subscription_id]["custom_id"] == "user-9|sub.example"
        assert gateway.subscriptions[subscription_id]["plan_id"] == "P-PRIME"
        pending = db.query(PendingOrder).one()
        assert pending.external_order_id == subscription_id
        assert pending.plan_code == "prime"

        activated = client.post("/api/v1/webhooks/paypal", json={
            "id": "WH-SUB",
            "event_type": "BILLING.SUBSCRIPTION.ACTIVATED",
            "resource": {"id": subscription_id, "custom_id": "user-9|sub.example", "status": "ACTIVE"},
        })

        assert activated.status_code == 200
        domain_id = activated.json()["domain_id"]
        assert client.get(f"/api/v1/domains/{domain_id}").json()["status"] == DomainStatus.ACTIVE

    def test_subscription_checkout_unknown_plan_is_404(self, client, auth_headers) -> None:
        response = client.post(
            "/api/v1/checkout/subscriptions",
            json={"fqdn": "sub.example", "amount": "9.99", "plan_code": "gold", "processor_plan_id": "P-1"},
            headers=auth_headers("user-9"),
        )

        assert response.status_code == 404

    def test_invalid_token(self, client) -> None:
        response = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401


class TestTransferRoutes:
    def test_transfer_end_to_end(self, client, auth_headers, make_customer, make_domain) -> None:
        sender = make_customer(user_id="sender", email="sender@example.com")
        make_customer(user_id="recipient", email="recipient@example.com")
        domain = make_domain(sender)
        sender_headers = auth_headers("sender")
        recipient_headers = auth_headers("recipient")

        created = client.post(
            "/api/v1/transfers/",
            json={"domain_id": domain.id, "to_email": "recipient@example.com"},
            headers=sender_headers,
        )
        assert created.status_code == 200
        transfer_id = created.json()["id"]
        assert created.json()["status"] == "pending"

        payment = client.post(f"/api/v1/transfers/{transfer_id}/payment", headers=recipient_headers)
        assert payment.status_code == 200
        order_id = payment.json()["order_id"]

        completed = client.post(
            f"/api/v1/transfers/{transfer_id}/complete",
            json={"processor_order_id": order_id},
            headers=recipient_headers,
        )
        assert completed.status_code == 200
        assert completed.json()["status"] == "completed"

        listed = client.get("/api/v1/transfers/", headers=recipient_headers).json()
        assert [t["id"] for t in listed] == [transfer_id]

        owner = client.get(f"/api/v1/domains/{domain.id}").json()["customer_id"]
        me = client.get("/api/v1/auth/me", headers=recipient_headers).json()
        assert owner == me["id"]

    def test_inactive_domain_conflicts(self, client, auth_headers, make_customer, make_domain) -> None:
        sender = make_customer(user_id="sender", email="sender@example.com")
        make_customer(user_id="recipient", email="recipient@example.com")
        domain = make_domain(sender, status=DomainStatus.REDEMPTION)

        response = client.post(
            "/api/v1/transfers/",
            json={"domain_id": domain.id, "to_email": "recipient@example.com"},
            headers=auth_headers("sender"),
        )

        assert response.status_code == 409
        assert response.json()["success"] is False


class TestDomainRoutes:
    def test_missing_domain_is_404(self, client) -> None:
        response = client.get("/api/v1/domains/999")

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Domain 999 not found"}

    def test_hold_and_clear(self, client, make_customer, make_domain, operator_headers) -> None:
        domain = make_domain(make_customer())

        held = client.post(
            f"/api/v1/domains/{domain.id}/hold",
            json={"hold": "dispute_hold", "notes": "chargeback"},
            headers=operator_headers,
        )
        assert held.status_code == 200
        assert held.json()["status"] == DomainStatus.DISPUTE_HOLD

        cleared = client.post(f"/api/v1/domains/{domain.id}/clear-hold", headers=operator_headers)
        assert cleared.status_code == 200
        assert cleared.json()["status"] == DomainStatus.ACTIVE

    @pytest.mark.parametrize("hold", ["grace", "active"])
    def test_only_hold_states_accepted(self, client, make_customer, make_domain, hold, operator_headers) -> None:
        domain = make_domain(make_customer())

        response = client.post(f"/api/v1/domains/{domain.id}/hold", json={"hold": hold}, headers=operator_headers)

        assert response.status_code == 422

    def test_list_filters_by_status(self, client, make_customer, make_domain) -> None:
        customer = make_customer()
        make_domain(customer, fqdn="a.example")
        make_domain(customer, fqdn="b.example", status=DomainStatus.GRACE)

        listed = client.get("/api/v1/domains/", params={"status": "grace"}).json()

        assert [d["fqdn"] for d in listed] == ["b.example"]
