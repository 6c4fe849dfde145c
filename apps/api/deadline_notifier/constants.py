from __future__ import annotations

KIND_APPROACHING = "approaching"
KIND_DAY_BEFORE = "dayBefore"
KIND_DAY_OF = "dayOf"
KIND_OVERDUE = "overdue"
KIND_WEEKLY_DIGEST = "weeklyDigest"

# Kinds a Schedule may carry in reminder_specs, in firing order.
DEADLINE_KINDS = (KIND_APPROACHING, KIND_DAY_BEFORE, KIND_DAY_OF, KIND_OVERDUE)
ALL_KINDS = DEADLINE_KINDS + (KIND_WEEKLY_DIGEST,)
# These must never be pushed past the deadline by a quiet-hours shift.
PRE_DEADLINE_KINDS = frozenset({KIND_APPROACHING, KIND_DAY_BEFORE, KIND_DAY_OF})

CHANNEL_EMAIL = "email"
CHANNEL_PUSH = "push"
CHANNEL_INAPP = "inApp"
CHANNELS = (CHANNEL_EMAIL, CHANNEL_PUSH, CHANNEL_INAPP)

STATUS_SCHEDULED = "scheduled"
STATUS_EXPIRED = "expired"
STATUS_SUBMITTED = "submitted"
STATUS_CANCELLED = "cancelled"
SCHEDULE_STATUSES = (STATUS_SCHEDULED, STATUS_EXPIRED, STATUS_SUBMITTED, STATUS_CANCELLED)
ACTIVE_STATUSES = (STATUS_SCHEDULED, STATUS_EXPIRED)
TERMINAL_STATUSES = frozenset({STATUS_SUBMITTED, STATUS_CANCELLED})

DISPATCH_PENDING = "pending"
DISPATCH_SENT = "sent"
DISPATCH_FAILED = "failed"
DISPATCH_READ = "read"
# Statuses covered by the per-tuple uniqueness guard.
DISPATCH_CLAIMED = (DISPATCH_PENDING, DISPATCH_SENT, DISPATCH_READ)
DISPATCH_DELIVERED = (DISPATCH_SENT, DISPATCH_READ)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

MAX_OFFSET_MINUTES = 60 * 24 * 60
