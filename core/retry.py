"""
Retry policy shared by the in-process processor and the result API:
a pure transition from (request, outcome) to the next queue action.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from core.models import LinkingRequest


class Action(str, Enum):
    COMPLETED = "completed"
    REQUEUED = "requeued"
    FAILED = "failed"


@dataclass(frozen=True)
class Transition:
    action: Action
    request: LinkingRequest


def apply_outcome(request: LinkingRequest, success: bool, max_retries: int) -> Transition:
    """
    Decide what happens to a request after one processing attempt.

    A failure below the ceiling yields a copy with retry_count + 1 that the
    caller re-enqueues; a failure at or above the ceiling is terminal.
    The input request is never mutated.
    """
    if success:
        return Transition(Action.COMPLETED, request)
    if request.retry_count < max_retries:
        return Transition(Action.REQUEUED, request.with_retry())
    return Transition(Action.FAILED, request)
