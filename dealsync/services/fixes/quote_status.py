from __future__ import annotations


# Xero quote status edges allowed by the API.
QUOTE_TRANSITIONS: dict[str, frozenset[str]] = {
    "DRAFT": frozenset({"SENT", "DELETED"}),
    "SENT": frozenset({"ACCEPTED", "DECLINED", "DELETED"}),
    "DECLINED": frozenset({"SENT", "DELETED"}),
    "ACCEPTED": frozenset({"SENT", "DELETED", "INVOICED"}),
    "INVOICED": frozenset({"SENT", "DELETED"}),
}


def transition_path(current: str, target: str) -> list[str] | None:
    """Statuses to set, in order, to move a quote from ``current`` to ``target``.

    Returns an empty list when already there and None when no path of at most
    two steps exists (only SENT is used as an intermediate state).
    """
    current = current.upper()
    target = target.upper()
    if current == target:
        return []
    allowed = QUOTE_TRANSITIONS.get(current, frozenset())
    if target in allowed:
        return [target]
    if "SENT" in allowed and target in QUOTE_TRANSITIONS["SENT"]:
        return ["SENT", target]
    return None
