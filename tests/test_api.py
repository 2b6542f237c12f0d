from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from coursehub.core.app_factory import create_application

ADMIN = {"X-User-Id": "1000", "X-User-Role": "admin"}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "api.db"))
    monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "0")
    for key in ("SMTP_HOST", "SMTP_USERNAME", "SMTP_FROM_EMAIL", "STRIPE_WEBHOOK_SECRET", "STRIPE_SECRET_KEY"):
        monkeypatch.delenv(key, raising=False)
    with TestClient(create_application()) as test_client:
        yield test_client


@pytest.fixture
def persistence(client):
    return client.app.state.container.persistence


@pytest.fixture
def student(persistence):
    user = persistence.create_user("student@example.com", "Student")
    return user, {"X-User-Id": str(user.id)}


@pytest.fixture
def course(persistence):
    return persistence.create_course("FastAPI in Depth", max_students=5, lessons_count=8)


def course_payload(course, **overrides):
    start = datetime.now(timezone.utc)
    payload = {
        "subscription_type": "course",
        "course_id": course.id,
        "start_date": start.isoformat(),
        "end_date": (start + timedelta(days=30)).isoformat(),
        "price": "100",
        "currency": "usd",
    }
    payload.update(overrides)
    return payload


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["sweep_running"] is False
    assert body["payments_webhook_enabled"] is False


def test_identity_header_is_required(client):
    assert client.get("/api/subscriptions").status_code == 401
    assert client.get("/api/subscriptions", headers={"X-User-Id": "abc"}).status_code == 401


def test_subscription_lifecycle_over_http(client, persistence, student, course):
    user, headers = student

    created = client.post("/api/subscriptions", json=course_payload(course), headers=headers)
    assert created.status_code == 201
    subscription = created.json()
    assert subscription["status"] == "pending"
    assert subscription["currency"] == "USD"
    assert Decimal(str(subscription["price"])) == Decimal("100")
    assert subscription["total_lessons"] == 8
    assert persistence.get_course(course.id).current_students_count == 1

    sub_id = subscription["id"]
    forbidden = client.post(f"/api/subscriptions/{sub_id}/activate", json={"transaction_id": "abc"}, headers=headers)
    assert forbidden.status_code == 403

    activated = client.post(f"/api/subscriptions/{sub_id}/activate", json={"transaction_id": "abc"}, headers=ADMIN)
    assert activated.status_code == 200
    assert activated.json()["is_paid"] is True

    cancelled = client.post(f"/api/subscriptions/{sub_id}/cancel", json={"reason": "x"}, headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert persistence.get_course(course.id).current_students_count == 0

    access = client.get("/api/subscriptions/access", params={"course_id": course.id}, headers=headers)
    assert access.status_code == 200
    assert access.json()["access"] == "cancelled_grace"
    assert access.json()["has_access"] is True

    again = client.post(f"/api/subscriptions/{sub_id}/cancel", json={"reason": "again"}, headers=headers)
    assert again.status_code == 409
    assert again.json()["error_code"] == "CONFLICT"


def test_validation_errors_use_error_body(client, student, course):
    _, headers = student

    missing_course = client.post(
        "/api/subscriptions", json=course_payload(course, course_id=None), headers=headers
    )
    assert missing_course.status_code == 400
    assert missing_course.json()["error_code"] == "BAD_REQUEST"

    bad_enum = client.post(
        "/api/subscriptions", json=course_payload(course, subscription_type="lifetime"), headers=headers
    )
    assert bad_enum.status_code == 422


def test_duplicate_course_subscription_conflicts(client, student, course):
    _, headers = student
    assert client.post("/api/subscriptions", json=course_payload(course), headers=headers).status_code == 201

    duplicate = client.post("/api/subscriptions", json=course_payload(course), headers=headers)

    assert duplicate.status_code == 409


def test_users_only_see_their_own_subscriptions(client, persistence, student, course):
    _, headers = student
    stranger = persistence.create_user("stranger@example.com", "Stranger")
    stranger_headers = {"X-User-Id": str(stranger.id)}
    sub_id = client.post("/api/subscriptions", json=course_payload(course), headers=headers).json()["id"]

    assert client.get(f"/api/subscriptions/{sub_id}", headers=stranger_headers).status_code == 403
    assert client.get(f"/api/subscriptions/{sub_id}", headers=headers).status_code == 200
    assert client.get(f"/api/subscriptions/{sub_id}", headers=ADMIN).status_code == 200

    listing = client.get("/api/subscriptions", headers=stranger_headers)
    assert listing.status_code == 200
    assert listing.json()["total_items"] == 0

    admin_listing = client.get("/api/subscriptions", params={"status": "pending"}, headers=ADMIN)
    assert admin_listing.json()["total_items"] == 1


def test_admin_operations(client, persistence, student, course):
    user, headers = student
    sub_id = client.post("/api/subscriptions", json=course_payload(course), headers=headers).json()["id"]

    assert client.delete(f"/api/subscriptions/{sub_id}", headers=headers).status_code == 403

    stats = client.get("/api/subscriptions/statistics/overview", headers=ADMIN)
    assert stats.status_code == 200
    assert stats.json()["pending"] == 1

    by_course = client.get(f"/api/subscriptions/course/{course.id}", headers=ADMIN)
    assert by_course.json()["total_items"] == 1

    by_user = client.get(f"/api/subscriptions/user/{user.id}", headers=headers)
    assert [item["id"] for item in by_user.json()] == [sub_id]

    extended = client.post(f"/api/subscriptions/{sub_id}/extend", json={"months": 1}, headers=ADMIN)
    assert extended.status_code == 200

    sweep = client.post("/api/subscriptions/expire-check", headers=ADMIN)
    assert sweep.status_code == 200
    assert sweep.json()["completed"] is True

    persistence.set_seat_count(course.id, 4)
    resync = client.post(f"/api/subscriptions/courses/{course.id}/resync", headers=ADMIN)
    assert resync.json() == {"course_id": course.id, "current_students_count": 1}

    deleted = client.delete(f"/api/subscriptions/{sub_id}", headers=ADMIN)
    assert deleted.status_code == 204
    assert persistence.get_course(course.id).current_students_count == 0
    assert client.get(f"/api/subscriptions/{sub_id}", headers=ADMIN).status_code == 404


def test_update_and_progress(client, student, course):
    _, headers = student
    sub_id = client.post("/api/subscriptions", json=course_payload(course), headers=headers).json()["id"]

    updated = client.put(
        f"/api/subscriptions/{sub_id}", json={"auto_renewal": True, "notes": "gift"}, headers=headers
    )
    assert updated.status_code == 200
    assert updated.json()["auto_renewal"] is True
    assert updated.json()["next_billing_date"] is not None

    progress = client.post(f"/api/subscriptions/{sub_id}/progress", json={"completed_lessons": 2}, headers=headers)
    assert progress.status_code == 200
    assert progress.json()["progress_percentage"] == 25.0

    renewed = client.post(
        f"/api/subscriptions/{sub_id}/renew", json={"period_type": "1_month"}, headers=headers
    )
    assert renewed.status_code == 200
    assert renewed.json()["status"] == "active"
