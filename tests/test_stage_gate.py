import threading
from datetime import datetime, timedelta, timezone

import pytest

from approvals import create_app
from approvals.errors import RecordNotFound, StateConflict
from approvals.extensions import db
from approvals.models import Order, PaymentRequest
from approvals.workflow.gate import FieldPatch, StageGate, run_unit_of_work, transaction
from config import TestConfig

from conftest import make_payment


@pytest.fixture
def payment_id(app_ctx):
    payment = make_payment("PAY-2025-00001")
    db.session.commit()
    return payment.id


def _review_patch(amount=900):
    return FieldPatch.build(PaymentRequest, accountant_due_amount=amount, accountant_note="ok")


def test_field_patch_refuses_unknown_fields():
    with pytest.raises(TypeError):
        FieldPatch.build(PaymentRequest, stage="manager_done")
    with pytest.raises(TypeError):
        FieldPatch.build(PaymentRequest, operation_amount=1)


def test_field_patch_can_skip_absent_values():
    patch = FieldPatch.build(PaymentRequest, _skip_none=True, accountant_note=None, priority="1")
    assert dict(patch.values) == {"priority": "1"}

    patch = FieldPatch.build(PaymentRequest, accountant_note=None)
    assert dict(patch.values) == {"accountant_note": None}


def test_advance_moves_the_record(payment_id):
    gate = StageGate(PaymentRequest)
    with transaction():
        record = gate.advance(payment_id, "accountant", "pending_accountant", "manager", "pending_manager", _review_patch())

    assert record.stage == "manager"
    assert record.status == "pending_manager"
    assert record.accountant_note == "ok"


def test_second_transition_from_stale_state_conflicts(payment_id):
    gate = StageGate(PaymentRequest)
    outcomes = []
    for amount in (900, 800):
        try:
            with transaction():
                gate.advance(
                    payment_id, "accountant", "pending_accountant", "manager", "pending_manager", _review_patch(amount)
                )
            outcomes.append("won")
        except StateConflict:
            outcomes.append("conflict")

    assert outcomes == ["won", "conflict"]
    assert db.session.get(PaymentRequest, payment_id).accountant_due_amount == 900


@pytest.fixture
def shared_db_app(tmp_path):
    """App on a file database so concurrent sessions see each other's commits."""

    class RaceConfig(TestConfig):
        pass

    RaceConfig.SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'race.db'}"
    RaceConfig.SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False, "timeout": 30}}

    app = create_app(RaceConfig)
    with app.app_context():
        db.create_all()
        payment = make_payment("PAY-2025-00001")
        db.session.commit()
        app.config["RACE_PAYMENT_ID"] = payment.id

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def test_concurrent_same_state_transitions_have_one_winner(shared_db_app):
    payment_id = shared_db_app.config["RACE_PAYMENT_ID"]
    gate = StageGate(PaymentRequest)
    start = threading.Barrier(2)
    outcomes = {}

    def review(amount):
        with shared_db_app.app_context():
            def unit():
                with transaction():
                    gate.advance(
                        payment_id, "accountant", "pending_accountant", "manager", "pending_manager",
                        _review_patch(amount),
                    )

            start.wait(timeout=10)
            try:
                run_unit_of_work(unit, what=f"review {amount}")
                outcomes[amount] = "won"
            except StateConflict:
                outcomes[amount] = "conflict"
            except Exception as error:
                outcomes[amount] = error

    threads = [threading.Thread(target=review, args=(amount,)) for amount in (900, 800)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes.values(), key=str) == ["conflict", "won"], outcomes
    (winner,) = [amount for amount, outcome in outcomes.items() if outcome == "won"]
    with shared_db_app.app_context():
        record = db.session.get(PaymentRequest, payment_id)
        assert record.stage == "manager"
        assert record.accountant_due_amount == winner


def test_gate_clock_is_naive_utc():
    now = StageGate(PaymentRequest).clock()

    assert now.tzinfo is None
    assert abs(now - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=5)


def test_unknown_record_is_not_found(app_ctx):
    gate = StageGate(PaymentRequest)
    with pytest.raises(RecordNotFound):
        gate.advance(999, "accountant", "pending_accountant", "manager", "pending_manager", _review_patch())


def test_conflict_status_is_configurable(payment_id):
    gate = StageGate(PaymentRequest, conflict_status=404)
    with pytest.raises(StateConflict) as excinfo:
        gate.advance(payment_id, "manager", "pending_manager", "manager_done", "approved_manager", _review_patch())
    assert excinfo.value.status_code == 404


def test_patch_for_another_model_is_refused(payment_id):
    gate = StageGate(PaymentRequest)
    with pytest.raises(TypeError):
        gate.guarded_update(payment_id, [], FieldPatch.build(Order, notes="x"))


def test_transaction_rolls_back_on_error(payment_id):
    gate = StageGate(PaymentRequest)
    with pytest.raises(RuntimeError):
        with transaction():
            gate.advance(
                payment_id, "accountant", "pending_accountant", "manager", "pending_manager", _review_patch()
            )
            raise RuntimeError("boom")

    record = db.session.get(PaymentRequest, payment_id, populate_existing=True)
    assert record.stage == "accountant"
    assert record.accountant_due_amount is None


def test_lock_returns_current_row(payment_id):
    gate = StageGate(PaymentRequest)
    with transaction():
        assert gate.lock(payment_id).sequence_id == "PAY-2025-00001"
    with pytest.raises(RecordNotFound):
        gate.lock(12345)
