"""Supabase-backed snapshot store."""

from dataclasses import dataclass
from datetime import datetime

from supabase import Client

from intake_funnel.services.persistence import SnapshotEntry, SnapshotStore

_TABLE = "flow_snapshots"


@dataclass
class SupabaseSnapshotRepository(SnapshotStore):
    """Supabase implementation for namespaced flow snapshots."""

    client: Client

    def read(self, namespace: str, key: str) -> SnapshotEntry | None:
        """Return the stored entry for a key, if present."""
        response = (
            self.client.table(_TABLE)
            .select("value_json, written_at")
            .eq("namespace", namespace)
            .eq("key", key)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        row = response.data[0]
        return SnapshotEntry(
            value=row.get("value_json"),
            written_at=datetime.fromisoformat(str(row["written_at"])),
        )

    def write(self, namespace: str, key: str, entry: SnapshotEntry) -> None:
        """Insert or replace the entry for a key."""
        self.client.table(_TABLE).upsert(
            {
                "namespace": namespace,
                "key": key,
                "value_json": entry.value,
                "written_at": entry.written_at.isoformat(),
            },
            on_conflict="namespace,key",
        ).execute()

    def delete(self, namespace: str, key: str) -> None:
        self.client.table(_TABLE).delete().eq("namespace", namespace).eq(
            "key", key
        ).execute()

    def delete_namespace(self, namespace: str) -> None:
        """Remove every key stored under a namespace."""
        self.client.table(_TABLE).delete().eq("namespace", namespace).execute()
