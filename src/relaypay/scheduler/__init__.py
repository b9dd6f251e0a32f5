"""Periodic discovery of due scheduled payments."""

from relaypay.scheduler.periodic import PeriodicTask
from relaypay.scheduler.scheduler import PaymentScheduler, job_id_for

__all__ = ["PaymentScheduler", "PeriodicTask", "job_id_for"]
