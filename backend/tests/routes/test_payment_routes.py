"""API tests for reconciliation, deposit case, health and metrics routes."""

from datetime import timedelta

import pytest

from carshare.models.booking import BookingStatus
from carshare.models.payment import PaymentStatus
from carshare.schemas.stripe_payloads import CheckoutSessionSnapshot
from tests.factories import completed_payment_session, make_booking_with_payment


class TestReconcileRoutes:
    def test_checkout_reconcile(self, client, auth_headers, db, clock, car, renter, stripe_gateway) -> None:
        _, payment = make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() + timedelta(days=1),
            booking_status=BookingStatus.PENDING.value,
            payment_status=PaymentStatus.CHECKOUT_CREATED.value,
            stripe_checkout_session_id="cs_route",
        )
        stripe_gateway.retrieve_checkout_session.return_value = CheckoutSessionSnapshot.model_validate(
            completed_payment_session("cs_route", "pi_route")
        )

        response = client.post(
            "/api/v1/payments/checkout/reconcile",
            json={"session_id": "cs_route"},
            headers=auth_headers(renter),
        )

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert payment.status == PaymentStatus.PAID.value

    def test_unknown_session_is_404(self, client, auth_headers, renter) -> None:
        response = client.post(
            "/api/v1/payments/checkout/reconcile",
            json={"session_id": "cs_nope"},
            headers=auth_headers(renter),
        )
        assert response.status_code == 404

    def test_stale_sweep_is_support_only(self, client, auth_headers, renter, support_user) -> None:
        denied = client.post("/api/v1/payments/reconcile-stale", headers=auth_headers(renter))
        assert denied.status_code == 403
        assert denied.json()["code"] == "FORBIDDEN"

        allowed = client.post(
            "/api/v1/payments/reconcile-stale",
            json={"limit": 5, "older_than_minutes": 0},
            headers=auth_headers(support_user),
        )
        assert allowed.status_code == 200
        assert allowed.json()["limit"] == 5
        assert allowed.json()["scanned"] == 0


class TestDepositCaseRoutes:
    @pytest.fixture
    def finished_trip(self, db, clock, car, renter):
        return make_booking_with_payment(
            db,
            car,
            renter,
            start=clock() - timedelta(days=3),
            booking_status=BookingStatus.COMPLETED.value,
        )

    def test_file_resolve_and_list(
        self, client, auth_headers, host, renter, support_user, finished_trip
    ) -> None:
        booking, payment = finished_trip

        filed = client.post(
            "/api/v1/deposit-cases",
            json={"booking_id": booking.id, "reason": "Bumper scratch", "requested_amount": "80"},
            headers=auth_headers(host.user),
        )
        assert filed.status_code == 201
        case_id = filed.json()["case_id"]
        assert filed.json()["requested_amount"] == 80.0

        listed = client.get(f"/api/v1/deposit-cases/payment/{payment.id}", headers=auth_headers(host.user))
        assert [item["id"] for item in listed.json()["items"]] == [case_id]

        denied = client.post(
            f"/api/v1/deposit-cases/{case_id}/resolve",
            json={"resolution": "approve"},
            headers=auth_headers(renter),
        )
        assert denied.status_code == 403

        resolved = client.post(
            f"/api/v1/deposit-cases/{case_id}/resolve",
            json={"resolution": "partial"},
            headers=auth_headers(support_user),
        )
        assert resolved.status_code == 200
        assert resolved.json()["resolution_amount"] == 40.0

    def test_support_takes_case_under_review(
        self, client, auth_headers, host, support_user, finished_trip
    ) -> None:
        booking, payment = finished_trip
        filed = client.post(
            "/api/v1/deposit-cases",
            json={"booking_id": booking.id, "reason": "Cracked mirror", "requested_amount": "50"},
            headers=auth_headers(host.user),
        )
        case_id = filed.json()["case_id"]

        denied = client.post(f"/api/v1/deposit-cases/{case_id}/review", headers=auth_headers(host.user))
        assert denied.status_code == 403

        reviewed = client.post(
            f"/api/v1/deposit-cases/{case_id}/review", headers=auth_headers(support_user)
        )
        assert reviewed.status_code == 200
        assert reviewed.json()["status"] == "under_review"
        assert reviewed.json()["payment_id"] == payment.id

        again = client.post(
            f"/api/v1/deposit-cases/{case_id}/review", headers=auth_headers(support_user)
        )
        assert again.status_code == 400

    def test_renter_cannot_file(self, client, auth_headers, renter, finished_trip) -> None:
        booking, _ = finished_trip
        response = client.post(
            "/api/v1/deposit-cases",
            json={"booking_id": booking.id, "reason": "Not mine"},
            headers=auth_headers(renter),
        )
        assert response.status_code == 401


class TestHealthRoutes:
    def test_health(self, client) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["cache-control"] == "no-store"

    def test_metrics(self, client) -> None:
        response = client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")

    def test_metrics_reflect_new_events(self, client, auth_headers, support_user) -> None:
        client.post("/api/v1/payments/reconcile-stale", headers=auth_headers(support_user))
        body = client.get("/metrics").text
        assert 'operation="reconcile_stale_checkouts"' in body

    def test_unknown_path_is_problem_document(self, client) -> None:
        response = client.get("/api/v1/nowhere")
        assert response.status_code == 404
        assert response.headers["content-type"].startswith("application/problem+json")
        problem = response.json()
        assert problem["title"] == "Not Found"
        assert problem["instance"] == "/api/v1/nowhere"
