"""
Glare resolution.

When both parties dial each other at nearly the same time two ringing
records exist. Both devices apply the same rule to the same pair of ids, so
they agree on the surviving record without any further exchange.

The rule compares ids only. created_at is not used: it is written by each
device's clock and ids are not, so an id-only rule cannot diverge. Any change
here must ship to every device at once.
"""

from datetime import timedelta
from typing import Tuple

from family_calls.models.call_record import CallRecord, CallStatus


def _both_numeric(a: str, b: str) -> bool:
    return a.isdigit() and b.isdigit()


def id_precedes(a: str, b: str) -> bool:
    """True when id a wins over id b: numerically if both are integers, else lexicographically."""
    if _both_numeric(a, b):
        return int(a) < int(b)
    return a < b


def pick_winner(first: CallRecord, second: CallRecord) -> CallRecord:
    """Return the record that stays active. Symmetric in its arguments."""
    return first if id_precedes(first.id, second.id) else second


def split_glare(own: CallRecord, other: CallRecord) -> Tuple[CallRecord, CallRecord]:
    """Return (winner, loser)."""
    winner = pick_winner(own, other)
    return (winner, other if winner is own else own)


def is_glare(own: CallRecord, incoming: CallRecord, self_id: str, window_seconds: float) -> bool:
    """
    Whether an incoming ring collides with our own outgoing ring.

    Args:
        own: Record we created as caller
        incoming: Ringing record naming us as callee
        self_id: Our profile id
        window_seconds: Both records must be created within this span
    """
    if own.id is None or incoming.id is None or own.id == incoming.id:
        return False
    if own.caller_id != self_id or incoming.callee_id != self_id:
        return False
    if incoming.caller_id != own.callee_id:
        return False
    if own.is_ended or incoming.status != CallStatus.RINGING:
        return False
    if own.created_at is None or incoming.created_at is None:
        return True
    return abs(own.created_at - incoming.created_at) <= timedelta(seconds=window_seconds)
