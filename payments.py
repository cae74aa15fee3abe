"""
Copyright (c) 2025 Amit Kadam

All Rights Reserved. No part of this software may be copied, reproduced, distributed, or used in derivative works without the prior written permission of the copyright holder.

For permission requests, contact: amitkadam96k@gmail.com
"""

from dataclasses import dataclass
from datetime import datetime

OWN = "own"
EXTERNAL = "external"

COLLECTED = "collected"
PENDING = "pending"
NOT_YET_DUE = "not yet due"


@dataclass(frozen=True)
class Lesson:
    start: datetime
    end: datetime
    price: float
    paid: bool = False
    external: bool = False
    id: int | None = None
    title: str = ""
    type: str = "student"
    student_id: int | None = None
    group_id: int | None = None


@dataclass(frozen=True)
class PaymentSummary:
    own_pending: float = 0.0
    own_collected: float = 0.0
    external_pending: float = 0.0
    external_collected: float = 0.0

    @property
    def total_collected(self):
        return self.own_collected + self.external_collected

    @property
    def total_pending(self):
        return self.own_pending + self.external_pending

    def as_dict(self):
        return {
            "ownPending": self.own_pending,
            "ownCollected": self.own_collected,
            "externalPending": self.external_pending,
            "externalCollected": self.external_collected,
            "totalCollected": self.total_collected,
            "totalPending": self.total_pending,
        }


def lesson_bucket(lesson):
    return EXTERNAL if lesson.external else OWN


def lesson_status(lesson, now):
    """Collected if paid, pending once the lesson has ended, else not yet due.

    A lesson ending exactly at ``now`` is already due.
    """
    if lesson.paid:
        return COLLECTED
    if lesson.end <= now:
        return PENDING
    return NOT_YET_DUE


def in_month(lesson, year, month):
    return lesson.start.year == year and lesson.start.month == month


def lessons_in_month(lessons, year, month):
    return [lesson for lesson in lessons if in_month(lesson, year, month)]


def summarize(lessons, now):
    """Sum lesson prices per (bucket, status) with no date window."""
    totals = {
        (OWN, PENDING): 0.0,
        (OWN, COLLECTED): 0.0,
        (EXTERNAL, PENDING): 0.0,
        (EXTERNAL, COLLECTED): 0.0,
    }
    for lesson in lessons:
        status = lesson_status(lesson, now)
        if status == NOT_YET_DUE:
            continue
        totals[(lesson_bucket(lesson), status)] += lesson.price

    return PaymentSummary(
        own_pending=totals[(OWN, PENDING)],
        own_collected=totals[(OWN, COLLECTED)],
        external_pending=totals[(EXTERNAL, PENDING)],
        external_collected=totals[(EXTERNAL, COLLECTED)],
    )


def monthly_summary(lessons, year, month, now):
    """Summary of the lessons that start in the given calendar month."""
    return summarize(lessons_in_month(lessons, year, month), now)


def pending_payment(lessons, now):
    """All-time amount still owed for one student or group, both buckets."""
    return summarize(lessons, now).total_pending


def shift_month(year, month, delta):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1
