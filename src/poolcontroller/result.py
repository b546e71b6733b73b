"""Outcome of a single reconciliation pass."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ReconcileResult:
    """What the work queue should do with a key after a successful pass.

    A pass that fails raises instead; the queue then requeues the key with
    exponential backoff.
    """

    requeue: bool = False
    requeue_after: float | None = None

    @property
    def wants_requeue(self) -> bool:
        return self.requeue or self.requeue_after is not None
