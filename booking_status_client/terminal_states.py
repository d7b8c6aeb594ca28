from typing import Optional

TERMINAL_STATUSES = frozenset(
    {"confirmed", "completed", "cancelled", "failed", "expired", "rejected"}
)


def is_terminal(status: Optional[str]) -> bool:
    """Whether polling a resource in this status can still tell us anything new.

    Unrecognized tokens are treated as in-progress so a new backend status
    never stops monitoring silently.
    """
    if not status:
        return False
    return status.strip().lower() in TERMINAL_STATUSES
