from typing import Optional, Union

from booking_status_client.models import ResourceCategory

MIN_INTERVAL_MS = 10_000

# Base spacing between polls, matching how fast each backend usually moves
BASE_INTERVALS_MS = {
    ResourceCategory.flight: 30_000,
    ResourceCategory.hotel: 45_000,
    ResourceCategory.visa: 300_000,
    ResourceCategory.insurance: 60_000,
    ResourceCategory.package: 60_000,
}

# Attempt budgets; budget x base interval is the total watch window.
# Visa gets fewer attempts than flight on purpose: at its 5 minute base
# interval it still watches longest, and 20 polls keeps backend load low.
MAX_ATTEMPTS = {
    ResourceCategory.flight: 40,  # 20 minutes
    ResourceCategory.hotel: 30,  # 22.5 minutes
    ResourceCategory.visa: 20,  # 100 minutes
    ResourceCategory.insurance: 25,  # 25 minutes
    ResourceCategory.package: 25,  # 25 minutes
}

STATUS_MULTIPLIERS = {
    "pending": 1.0,
    "processing": 0.5,
    "confirmed": 2.0,
    "failed": 0.25,
    "cancelled": 3.0,
    "expired": 3.0,
    "rejected": 2.0,
}


def status_multiplier(status: Optional[str]) -> float:
    if not status:
        return 1.0
    return STATUS_MULTIPLIERS.get(status.strip().lower(), 1.0)


def compute_interval(
    category: Union[ResourceCategory, str], status: Optional[str] = None
) -> int:
    """Milliseconds to wait before the next poll of a resource.

    The category's base interval is scaled by the last known status, so an
    actively processing booking is checked twice as often and a cancelled one
    three times less often. The result never drops below ``MIN_INTERVAL_MS``.
    """
    base = BASE_INTERVALS_MS[ResourceCategory(category)]
    return max(int(base * status_multiplier(status)), MIN_INTERVAL_MS)


def compute_max_attempts(category: Union[ResourceCategory, str]) -> int:
    return MAX_ATTEMPTS[ResourceCategory(category)]
