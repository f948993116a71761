"""Tests for *foodzone_license_server.service*: the activation protocol."""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from foodzone_license_server.errors import (
    ConflictError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from foodzone_license_server.keys import expiry_from_months, is_valid_format
from foodzone_license_server.models import ActivationAttempt, VerificationLog, utcnow

KEY = "FOOD-AAAA-BBBB-CCCC"


def _successes(key):
    return ActivationAttempt.query.filter_by(license_key=key, success=True).count()


# ---------------------------------------------------------------------------
# activate
# ---------------------------------------------------------------------------

def test_activate_binds_pending_license(service, store):
    store.create(KEY)
    outcome = service.activate(KEY, "dev-a", {"model": "Pixel"}, "Cafe X", ip_address="10.0.0.7")

    assert outcome.message == "License activated successfully"
    assert outcome.expires_at is None
    lic = store.get_by_key(KEY)
    assert lic.status == "active"
    assert lic.device_id == "dev-a"
    assert lic.activated_at is not None
    assert lic.last_verified_at is not None

    attempt = ActivationAttempt.query.one()
    assert attempt.success is True
    assert attempt.ip_address == "10.0.0.7"


def test_activate_is_idempotent_for_same_device(service, store):
    store.create(KEY)
    service.activate(KEY, "dev-a", {}, "Cafe X")
    second = service.activate(KEY, "dev-a", {}, "Cafe X")

    assert second.message == "License already activated on this device"
    assert store.get_by_key(KEY).status == "active"
    assert _successes(KEY) == 1


def test_second_device_is_rejected_and_binding_kept(service, store):
    store.create(KEY)
    service.activate(KEY, "dev-a", {}, "Cafe X")

    with pytest.raises(ConflictError) as exc:
        service.activate(KEY, "dev-b", {}, "Cafe Y")

    assert exc.value.hint
    lic = store.get_by_key(KEY)
    assert lic.device_id == "dev-a"
    assert lic.business_name == "Cafe X"
    failed = ActivationAttempt.query.filter_by(success=False).one()
    assert failed.device_id == "dev-b"
    assert failed.error_message == "License already activated on another device"


def test_deactivate_then_other_device_can_activate(service, store):
    store.create(KEY)
    service.activate(KEY, "dev-a", {}, "Cafe X")
    service.deactivate(KEY)
    assert store.get_by_key(KEY).status == "pending"

    service.activate(KEY, "dev-b", {}, "Cafe X")
    lic = store.get_by_key(KEY)
    assert lic.status == "active"
    assert lic.device_id == "dev-b"
    assert service.verify(KEY, "dev-a").reason == "device_mismatch"
    assert service.verify(KEY, "dev-b").valid is True


def test_deactivate_is_idempotent(service, store):
    store.create(KEY)
    service.deactivate(KEY)
    service.deactivate(KEY)
    assert store.get_by_key(KEY).status == "pending"


def test_deactivate_unknown_key(service):
    with pytest.raises(NotFoundError):
        service.deactivate("FOOD-0000-0000-0000")


def test_activate_unknown_key(service):
    with pytest.raises(NotFoundError):
        service.activate("FOOD-AAAA-BBBB-CCCC", "dev1", {}, "Cafe X")


def test_activate_expired_key(service, store):
    store.create(KEY, utcnow() - timedelta(minutes=1))
    with pytest.raises(ExpiredError):
        service.activate(KEY, "dev-a", {}, "Cafe X")
    assert store.get_by_key(KEY).status == "pending"


@pytest.mark.parametrize(
    "key, device, business",
    [
        ("", "dev", "Cafe"),
        (KEY, "", "Cafe"),
        (KEY, "dev", ""),
        (KEY, "dev", "   "),
        ("FOOD-aaaa-bbbb-cccc", "dev", "Cafe"),
    ],
)
def test_activate_validates_input(service, key, device, business):
    with pytest.raises(ValidationError):
        service.activate(key, device, {}, business)


def test_concurrent_activation_cannot_double_bind(service, store):
    """Device B reads the license as pending, but device A binds it first."""
    store.create(KEY)
    real_bind = store.bind_device

    def racing_bind(key, device_id, device_info, business_name, now):
        if device_id == "dev-b":
            assert real_bind(key, "dev-a", {}, "Cafe A", now)
        return real_bind(key, device_id, device_info, business_name, now)

    with patch.object(store, "bind_device", side_effect=racing_bind):
        with pytest.raises(ConflictError):
            service.activate(KEY, "dev-b", {}, "Cafe B")

    lic = store.get_by_key(KEY)
    assert lic.device_id == "dev-a"
    assert lic.business_name == "Cafe A"


def test_threaded_activation_binds_exactly_one_device(app):
    with app.app_context():
        app.extensions["license_store"].create(KEY)

    barrier = threading.Barrier(2)
    results = {}

    def activate(device_id):
        with app.app_context():
            service = app.extensions["license_service"]
            barrier.wait()
            try:
                service.activate(KEY, device_id, {}, f"Cafe {device_id}")
                results[device_id] = "ok"
            except ConflictError:
                results[device_id] = "conflict"

    threads = [threading.Thread(target=activate, args=(d,)) for d in ("dev-a", "dev-b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(results.values()) == ["conflict", "ok"]
    winner = next(d for d, r in results.items() if r == "ok")
    with app.app_context():
        lic = app.extensions["license_store"].get_by_key(KEY)
        assert lic.status == "active"
        assert lic.device_id == winner
        assert ActivationAttempt.query.filter_by(success=True).count() == 1


def test_lost_race_to_same_device_is_success(service, store):
    store.create(KEY)
    real_bind = store.bind_device

    def racing_bind(key, device_id, device_info, business_name, now):
        assert real_bind(key, device_id, device_info, business_name, now)
        return real_bind(key, device_id, device_info, business_name, now)

    with patch.object(store, "bind_device", side_effect=racing_bind):
        outcome = service.activate(KEY, "dev-a", {}, "Cafe A")

    assert outcome.message == "License already activated on this device"


# ---------------------------------------------------------------------------
# verify / check
# ---------------------------------------------------------------------------

def test_verify_valid_logs_and_touches(service, store):
    store.create(KEY)
    service.activate(KEY, "dev-a", {}, "Cafe X")

    outcome = service.verify(KEY, "dev-a")
    assert outcome.valid is True
    assert outcome.business_name == "Cafe X"
    assert VerificationLog.query.filter_by(license_key=KEY).count() == 1


@pytest.mark.parametrize(
    "setup, device, reason",
    [
        ("missing", "dev-a", "not_found"),
        ("pending", "dev-a", "not_activated"),
        ("active", "dev-b", "device_mismatch"),
    ],
)
def test_verify_invalid_reasons(service, store, setup, device, reason):
    if setup != "missing":
        store.create(KEY)
    if setup == "active":
        service.activate(KEY, "dev-a", {}, "Cafe X")

    outcome = service.verify(KEY, device)
    assert outcome.valid is False
    assert outcome.reason == reason
    assert VerificationLog.query.count() == 0


@pytest.mark.parametrize("device", ["dev-a", "dev-b"])
def test_verify_expired_is_invalid_regardless_of_device(service, store, device):
    store.create(KEY, utcnow() + timedelta(days=1))
    service.activate(KEY, "dev-a", {}, "Cafe X")
    store.update(KEY, expires_at=utcnow() - timedelta(seconds=1))

    outcome = service.verify(KEY, device)
    assert outcome.valid is False
    assert outcome.reason in {"expired", "device_mismatch"}
    if device == "dev-a":
        assert outcome.reason == "expired"


def test_check_has_no_side_effects(service, store):
    store.create(KEY)
    outcome = service.check(KEY)

    assert outcome.exists is True
    assert outcome.status == "pending"
    assert VerificationLog.query.count() == 0
    assert ActivationAttempt.query.count() == 0
    assert service.check("FOOD-0000-0000-0000").exists is False


# ---------------------------------------------------------------------------
# admin
# ---------------------------------------------------------------------------

def test_generate_with_subscription(service):
    before = utcnow()
    created = service.generate(5, subscription_months=1)
    after = utcnow()

    keys = [c.license_key for c in created]
    assert len(set(keys)) == 5
    assert all(is_valid_format(k) for k in keys)
    for c in created:
        assert expiry_from_months(1, before) <= c.expires_at <= expiry_from_months(1, after)
    assert service.stats()["pending"] == 5


def test_generate_skips_collisions(service):
    keys = iter(["FOOD-1111-1111-1111", "FOOD-1111-1111-1111", "FOOD-2222-2222-2222"])
    with patch("foodzone_license_server.service.generate_license_key", side_effect=lambda: next(keys)):
        created = service.generate(3)

    assert [c.license_key for c in created] == ["FOOD-1111-1111-1111", "FOOD-2222-2222-2222"]


def test_suspicious_surfaces_repeated_conflicts(service, store):
    store.create(KEY)
    service.activate(KEY, "dev-a", {}, "Cafe X")
    for _ in range(4):
        with pytest.raises(ConflictError):
            service.activate(KEY, "dev-thief", {}, "Other")
    for _ in range(3):
        with pytest.raises(ConflictError):
            service.activate(KEY, "dev-curious", {}, "Other")

    suspicious = service.find_suspicious()
    assert suspicious == [{"license_key": KEY, "device_id": "dev-thief", "attempt_count": 4}]
    # advisory only: nothing is locked
    assert service.verify(KEY, "dev-a").valid is True
