from datetime import datetime

import pytest

from core.errors import ValidationError
from database.models import AuditLog, AuditAction, Policy, PolicyKey
from services.policy_service import PolicyGate


def set_window(db, gate, start, end, deadline=None):
    gate.set_policy(db, "registration_start", start)
    gate.set_policy(db, "registration_end", end)
    if deadline:
        gate.set_policy(db, "drop_deadline", deadline)


def test_open_when_unconfigured(db):
    decision = PolicyGate().is_registration_open(db)
    assert decision.is_open
    assert decision.message == "No registration window configured"
    assert PolicyGate().is_drop_allowed(db).is_allowed


def test_registration_window_bounds(db):
    gate = PolicyGate()
    set_window(db, gate, "2026-01-10T00:00:00Z", "2026-01-20T00:00:00Z")

    before = gate.is_registration_open(db, now=datetime(2026, 1, 9))
    assert not before.is_open
    assert before.message == "Registration opens on 2026-01-10"

    inside = gate.is_registration_open(db, now=datetime(2026, 1, 15))
    assert inside.is_open
    assert inside.message == "Registration is open"

    after = gate.is_registration_open(db, now=datetime(2026, 1, 21))
    assert not after.is_open
    assert after.message == "Registration closed on 2026-01-20"


def test_window_edges_are_inclusive(db):
    gate = PolicyGate()
    set_window(db, gate, "2026-01-10T00:00:00Z", "2026-01-20T00:00:00Z")
    assert gate.is_registration_open(db, now=datetime(2026, 1, 10)).is_open
    assert gate.is_registration_open(db, now=datetime(2026, 1, 20)).is_open


def test_offset_values_are_compared_in_utc(db):
    gate = PolicyGate()
    set_window(db, gate, "2026-01-10T02:00:00+02:00", "2026-01-20T00:00:00Z")
    # 02:00+02:00 is midnight UTC
    assert gate.is_registration_open(db, now=datetime(2026, 1, 10, 0, 0, 0)).is_open


def test_drop_deadline(db):
    gate = PolicyGate()
    gate.set_policy(db, "drop_deadline", "2026-02-01T00:00:00Z")
    allowed = gate.is_drop_allowed(db, now=datetime(2026, 1, 31))
    assert allowed.is_allowed
    assert allowed.message == "Drop allowed until 2026-02-01"
    passed = gate.is_drop_allowed(db, now=datetime(2026, 2, 2))
    assert not passed.is_allowed
    assert passed.message == "Drop deadline passed on 2026-02-01"


def test_set_policy_rejects_bad_input(db):
    gate = PolicyGate()
    with pytest.raises(ValidationError):
        gate.set_policy(db, "registration_forever", "2026-01-01T00:00:00Z")
    with pytest.raises(ValidationError):
        gate.set_policy(db, "drop_deadline", "next tuesday")


def test_set_policy_upserts_and_audits(db, services, admin):
    gate = services.policies
    gate.set_policy(db, "drop_deadline", "2026-02-01T00:00:00Z", actor_id=admin.id)
    gate.set_policy(db, "drop_deadline", "2026-03-01T00:00:00Z", actor_id=admin.id)

    assert db.query(Policy).filter(Policy.setting_key == PolicyKey.DROP_DEADLINE).count() == 1
    assert gate.get_policy(db, "drop_deadline") == "2026-03-01T00:00:00Z"
    entries = db.query(AuditLog).filter(
        AuditLog.action == AuditAction.POLICY_UPDATE.value
    ).order_by(AuditLog.id).all()
    assert len(entries) == 2
    assert entries[-1].details["old_value"] == "2026-02-01T00:00:00Z"


def test_unparseable_stored_value_is_ignored(db):
    db.add(Policy(setting_key=PolicyKey.DROP_DEADLINE, setting_value="garbage"))
    db.commit()
    assert PolicyGate().is_drop_allowed(db).message == "No drop deadline configured"


def test_seed_defaults_is_idempotent(db):
    gate = PolicyGate()
    now = datetime(2026, 1, 1)
    assert gate.seed_defaults(db, now=now) == 3
    assert gate.seed_defaults(db, now=now) == 0
    assert gate.is_registration_open(db, now=datetime(2026, 3, 1)).is_open
