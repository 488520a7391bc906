"""Recurring post scheduler — cron evaluation, due scanning, and dispatch."""

from src.scheduler.cron import CronExpression, describe, next_occurrence, parse_field
from src.scheduler.errors import CronError, DeliveryError, ErrorCode, UnschedulableError
from src.scheduler.executor import PostExecutor
from src.scheduler.models import ExecutionOutcome, Job, Schedule
from src.scheduler.queue import DispatchQueue, RetryPolicy
from src.scheduler.scanner import DueScanner
from src.scheduler.store import ScheduleStore

__all__ = [
    "CronError",
    "CronExpression",
    "DeliveryError",
    "DispatchQueue",
    "DueScanner",
    "ErrorCode",
    "ExecutionOutcome",
    "Job",
    "PostExecutor",
    "RetryPolicy",
    "Schedule",
    "ScheduleStore",
    "UnschedulableError",
    "describe",
    "next_occurrence",
    "parse_field",
]
