"""
Background worker: runs the outbox dispatcher, the hold-expiry sweeper and
the payment reconciler on fixed intervals. The /cron routes trigger the same
passes over HTTP.

    python -m src.worker
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from src.application.delivery_handlers import build_default_registry
from src.application.hold_expiry import expire_holds
from src.application.outbox_dispatcher import OutboxDispatcher
from src.application.reconciliation import PaymentReconciler
from src.infrastructure.config import (
    HOLD_SWEEP_SECONDS,
    OUTBOX_POLL_SECONDS,
    RECONCILE_SWEEP_SECONDS,
)
from src.infrastructure.db.session import SessionScope, get_db_session
from src.infrastructure.email import ResendEmailSender
from src.infrastructure.gateway.paymongo import PaymentGateway, PayMongoClient

logger = logging.getLogger(__name__)


@dataclass
class PeriodicTask:
    name: str
    interval_seconds: float
    run: Callable[[], object]
    next_run_at: float = 0.0

    def due(self, clock: float) -> bool:
        return clock >= self.next_run_at

    def run_once(self, clock: float) -> None:
        self.next_run_at = clock + self.interval_seconds
        try:
            self.run()
        except Exception:
            logger.exception("Worker pass %s failed", self.name)


def build_tasks(
    session_scope: SessionScope = get_db_session,
    gateway: PaymentGateway | None = None,
) -> list[PeriodicTask]:
    dispatcher = OutboxDispatcher(
        session_scope,
        build_default_registry(session_scope, ResendEmailSender()),
    )
    reconciler = PaymentReconciler(session_scope, gateway or PayMongoClient())

    return [
        PeriodicTask("process-outbox", OUTBOX_POLL_SECONDS, dispatcher.dispatch_batch),
        PeriodicTask("expire-holds", HOLD_SWEEP_SECONDS, lambda: expire_holds(session_scope)),
        PeriodicTask("reconcile-payments", RECONCILE_SWEEP_SECONDS, reconciler.run),
    ]


def run_forever(
    tasks: list[PeriodicTask] | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Callable[[], bool] = lambda: False,
) -> None:
    tasks = tasks if tasks is not None else build_tasks()
    logger.info("Worker started with %s", ", ".join(task.name for task in tasks))

    while not should_stop():
        now = clock()
        for task in tasks:
            if task.due(now):
                task.run_once(now)

        wake_at = min(task.next_run_at for task in tasks)
        sleep(max(0.0, wake_at - clock()))

    logger.info("Worker stopped")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    run_forever()
