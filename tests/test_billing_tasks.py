from unittest.mock import MagicMock, patch

import pytest

from app.tasks import billing as billing_tasks


@pytest.fixture
def sweeps_cls():
    with patch.object(billing_tasks, "SubscriptionSweeps") as cls, patch.object(
        billing_tasks, "SessionLocal"
    ) as session_local:
        session_local.return_value = MagicMock(name="session")
        yield cls


@pytest.mark.parametrize(
    "task, method",
    [
        (billing_tasks.sweep_expired, "sweep_expired"),
        (billing_tasks.send_trial_ending_reminders, "send_trial_ending_reminders"),
        (billing_tasks.send_expiry_reminders, "send_expiry_reminders"),
        (billing_tasks.process_auto_renewals, "process_auto_renewals"),
        (billing_tasks.reconcile_pending_payments, "reconcile_pending_payments"),
    ],
)
def test_task_runs_sweep_and_closes_session(sweeps_cls, task, method):
    getattr(sweeps_cls.return_value, method).return_value = 3

    assert task() == 3

    getattr(sweeps_cls.return_value, method).assert_called_once_with()
    billing_tasks.SessionLocal.return_value.close.assert_called_once()


def test_session_closed_when_sweep_fails(sweeps_cls):
    sweeps_cls.return_value.sweep_expired.side_effect = RuntimeError("db down")

    with pytest.raises(RuntimeError):
        billing_tasks.sweep_expired()

    billing_tasks.SessionLocal.return_value.close.assert_called_once()

