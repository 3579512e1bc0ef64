# Overview: Retry and compensation helpers shared by the workflow services.

from __future__ import annotations

import time
from typing import Callable

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def _retry_settings(attempts: int | None, backoff_base: float | None) -> tuple[int, float]:
    if attempts is None:
        attempts = int(current_app.config.get("RETRY_ATTEMPTS", 3))
    if backoff_base is None:
        backoff_base = float(current_app.config.get("RETRY_BACKOFF_SECONDS", 0.1))
    return max(attempts, 1), backoff_base


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB unit of work with retry on concurrency-related failures.

    Retries on OperationalError (lock timeouts, deadlocks, "database is
    locked") and StaleDataError (optimistic locking conflicts). The session is
    rolled back before each retry, so ``func`` must redo its reads.
    """
    attempts, backoff_base = _retry_settings(attempts, backoff_base)
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError):
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            current_app.logger.info(
                "Retrying unit of work after concurrency conflict (attempt %s/%s)",
                attempt + 1,
                attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))


class Compensation:
    """
    Undo list for a multi-step workflow whose steps commit independently.

    Each successful step registers how to undo itself. If a later step
    raises, ``run()`` executes the registered undos newest-first. An undo
    that itself fails is logged and the remaining undos still run; the
    original error is what the caller sees.

    Used as a context manager the list runs automatically on any exception:

        with Compensation("order create") as saga:
            reserve(...)
            saga.add("release item 1", lambda: release(...))
            ...
    """

    def __init__(self, label: str):
        self.label = label
        self._steps: list[tuple[str, Callable[[], object]]] = []

    def add(self, description: str, undo: Callable[[], object]) -> None:
        self._steps.append((description, undo))

    def __len__(self) -> int:
        return len(self._steps)

    def run(self) -> list[str]:
        """Run undos in reverse order. Returns descriptions of undos that failed."""
        failed: list[str] = []
        if self._steps:
            current_app.logger.warning(
                "Compensating %s: undoing %d step(s)", self.label, len(self._steps)
            )
        while self._steps:
            description, undo = self._steps.pop()
            try:
                undo()
            except Exception:
                db.session.rollback()
                failed.append(description)
                current_app.logger.exception(
                    "Compensation step failed for %s: %s", self.label, description
                )
        return failed

    def discard(self) -> None:
        """Forget registered undos once the workflow has fully succeeded."""
        self._steps.clear()

    def __enter__(self) -> "Compensation":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            db.session.rollback()
            self.run()
        return False
