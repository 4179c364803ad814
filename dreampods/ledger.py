"""Last-known error per pod role.

No history: each subject holds at most one ErrorRecord, overwritten on the
next failure and cleared on the next success. Slots are replaced by
assigning a new frozen record, so a snapshot never sees a half-written entry.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from loguru import logger

from .models import GENERAL, ErrorRecord, ErrorSubject, PodRole

SUBJECTS: tuple[ErrorSubject, ...] = (PodRole.GENERATION, PodRole.ORCHESTRATION, GENERAL)


class ErrorLedger:
    def __init__(self) -> None:
        self._slots: dict[ErrorSubject, ErrorRecord | None] = dict.fromkeys(SUBJECTS)

    def record(
        self,
        subject: ErrorSubject,
        message: str,
        detail: Mapping[str, Any] | None = None,
    ) -> ErrorRecord:
        entry = ErrorRecord.now(message, detail)
        self._slots[subject] = entry
        logger.bind(component="ledger", role=str(subject)).error(
            "{subject}: {message}", subject=subject, message=message,
        )
        return entry

    def clear(self, subject: ErrorSubject) -> None:
        self._slots[subject] = None

    def get(self, subject: ErrorSubject) -> ErrorRecord | None:
        return self._slots.get(subject)

    def snapshot(self) -> dict[ErrorSubject, ErrorRecord | None]:
        return dict(self._slots)
