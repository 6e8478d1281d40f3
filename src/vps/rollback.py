#!/usr/bin/env python3
"""
Rollback Stack — LIFO Compensation for Multi-Step Pipelines

Each forward step that creates something pushes a compensating action.
On failure the stack is unwound newest-first; every compensation runs
once, failures are logged and collected, never retried.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from core.errors import DeadlineExceeded, PartialFailure

logger = logging.getLogger(__name__)


@dataclass
class RollbackStep:
    """A compensating action paired with the forward step that created it."""
    name: str
    action: Callable[[], None] = field(repr=False)


@dataclass
class RollbackReport:
    rolled_back: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failed


class RollbackStack:
    """Per-operation stack of compensations."""

    def __init__(self, label: str = ""):
        self.label = label
        self._steps: List[RollbackStep] = []

    def push(self, name: str, action: Callable[[], None]):
        self._steps.append(RollbackStep(name=name, action=action))

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def names(self) -> List[str]:
        return [s.name for s in self._steps]

    def discard(self):
        """Forget all compensations (the operation committed)."""
        self._steps.clear()

    def unwind(self) -> RollbackReport:
        """Run every compensation in reverse push order, then empty the stack."""
        report = RollbackReport()
        while self._steps:
            step = self._steps.pop()
            try:
                step.action()
                report.rolled_back.append(step.name)
                logger.info(f"[ROLLBACK] {self.label} {step.name}: ok")
            except Exception as e:  # noqa: BLE001
                report.failed.append(step.name)
                logger.warning(f"[ROLLBACK] {self.label} {step.name}: FAIL {e}")
        return report

    def abort(self, step: str, error: Exception) -> Exception:
        """
        Unwind after ``step`` failed with ``error``.

        Returns the exception the caller should raise: ``error`` itself when
        nothing had been pushed yet, otherwise a PartialFailure naming the
        failed step and the compensations that ran.
        """
        if not self._steps:
            return error
        report = self.unwind()
        return PartialFailure(
            f"{step} failed: {error}",
            step=step,
            rolled_back=report.rolled_back,
            cleanup_failed=report.failed,
        )

    def check_deadline(self, deadline: Optional[float], next_step: str):
        if deadline is not None and time.time() >= deadline:
            raise DeadlineExceeded(f"deadline passed before {next_step}", step=next_step)
