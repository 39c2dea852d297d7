"""
Property data sources for the heartbeat scanners.

The relational store of the property-management product lives outside
this engine; scanners read it through the PropertyDataSource protocol,
which returns plain dict rows. InMemoryPropertySource backs tests and
local runs.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Protocol

Row = Dict[str, Any]

# Row kinds a source serves, in scanner order
ROW_KINDS = (
    "leases",
    "arrears",
    "maintenance",
    "inspections",
    "compliance",
    "applications",
    "listings",
    "communications",
)


class PropertyDataSource(Protocol):
    """Read-only view of one owner's portfolio."""

    def list_user_ids(self) -> List[str]:
        ...

    def leases(self, user_id: str) -> List[Row]:
        """Active tenancies: id, address, tenant_names, lease_end_date."""
        ...

    def arrears(self, user_id: str) -> List[Row]:
        """Unresolved arrears: id, tenancy_id, tenant_name, tenant_email,
        address, total_overdue, days_overdue, created_at."""
        ...

    def maintenance(self, user_id: str) -> List[Row]:
        """Open requests: id, title, address, urgency, status, updated_at."""
        ...

    def inspections(self, user_id: str) -> List[Row]:
        """Scheduled inspections: id, address, inspection_type, scheduled_date."""
        ...

    def compliance(self, user_id: str) -> List[Row]:
        """Compliance items: id, address, item_type, due_date, status."""
        ...

    def applications(self, user_id: str) -> List[Row]:
        """Submitted applications: id, applicant_name, address, submitted_at."""
        ...

    def listings(self, user_id: str) -> List[Row]:
        """Active listings: id, title, address, published_at, view_count,
        recent_applications."""
        ...

    def communications(self, user_id: str) -> List[Row]:
        """Inbound messages awaiting reply: id, sender_name, subject, received_at."""
        ...


class InMemoryPropertySource:
    """Dict-backed PropertyDataSource."""

    def __init__(self) -> None:
        self._rows: Dict[str, Dict[str, List[Row]]] = defaultdict(lambda: defaultdict(list))
        self._lock = threading.Lock()

    def add(self, user_id: str, kind: str, *rows: Row) -> None:
        if kind not in ROW_KINDS:
            raise ValueError(f"Unknown row kind: {kind}")
        with self._lock:
            self._rows[user_id][kind].extend(dict(r) for r in rows)

    def add_user(self, user_id: str) -> None:
        with self._lock:
            self._rows.setdefault(user_id, defaultdict(list))

    def clear(self, user_id: str, kind: str) -> None:
        with self._lock:
            self._rows[user_id][kind] = []

    def _get(self, user_id: str, kind: str) -> List[Row]:
        with self._lock:
            return [dict(r) for r in self._rows.get(user_id, {}).get(kind, [])]

    def list_user_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._rows)

    def leases(self, user_id: str) -> List[Row]:
        return self._get(user_id, "leases")

    def arrears(self, user_id: str) -> List[Row]:
        return self._get(user_id, "arrears")

    def maintenance(self, user_id: str) -> List[Row]:
        return self._get(user_id, "maintenance")

    def inspections(self, user_id: str) -> List[Row]:
        return self._get(user_id, "inspections")

    def compliance(self, user_id: str) -> List[Row]:
        return self._get(user_id, "compliance")

    def applications(self, user_id: str) -> List[Row]:
        return self._get(user_id, "applications")

    def listings(self, user_id: str) -> List[Row]:
        return self._get(user_id, "listings")

    def communications(self, user_id: str) -> List[Row]:
        return self._get(user_id, "communications")

    @classmethod
    def from_mapping(cls, data: Dict[str, Dict[str, Iterable[Row]]]) -> "InMemoryPropertySource":
        """Build from {user_id: {kind: [rows]}}."""
        source = cls()
        for user_id, kinds in data.items():
            source.add_user(user_id)
            for kind, rows in kinds.items():
                source.add(user_id, kind, *rows)
        return source
