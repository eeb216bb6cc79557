"""
Street round history service.

Builds the per-street status payload (current state plus round history) so
the frontend can render the completed-rounds list directly from the server.
"""
from typing import List, Dict, Any

from models import RoundEntry, StatusRecord, StreetStatus


def round_entry_payload(entry: RoundEntry) -> Dict[str, Any]:
    return {
        "round_number": entry.round_number,
        "status": entry.status,
        "started_at": entry.started_at,
        "finished_at": entry.finished_at,
        "assigned_users": sorted(entry.assigned_users or []),
        "changed_by": entry.changed_by,
        "updated_at": entry.updated_at,
    }


def get_round_history(entries: List[RoundEntry], completed_only: bool = True) -> List[Dict[str, Any]]:
    """
    Return the rounds ordered by round number (1..N).

    By default only completed rounds are included; the live round is part
    of the current status instead.
    """
    ordered = sorted(entries, key=lambda entry: entry.round_number)
    return [
        round_entry_payload(entry)
        for entry in ordered
        if not completed_only or entry.status == StreetStatus.DONE
    ]


def build_status_payload(record: StatusRecord, entries: List[RoundEntry]) -> Dict[str, Any]:
    return {
        "street_id": record.street_id,
        "date": record.date,
        "status": record.status,
        "current_round": record.current_round,
        "total_rounds": record.total_rounds,
        "started_at": record.started_at,
        "finished_at": record.finished_at,
        "assigned_users": sorted(record.assigned_users or []),
        "notes": record.notes,
        "changed_by": record.changed_by,
        "updated_at": record.updated_at,
        "completed_rounds": get_round_history(entries),
        "rounds": get_round_history(entries, completed_only=False),
    }
