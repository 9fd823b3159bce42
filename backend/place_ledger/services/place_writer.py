"""Place row writers used behind the registration gate."""

import uuid
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


class PlaceWriter(Protocol):
    async def insert_place(self, user_id: str, list_id: str, place: dict[str, Any]) -> dict[str, Any]:
        """Insert a place into a list and return the stored row."""


class InMemoryPlaceWriter:
    """Keeps place rows in a list; used for tests and local fallback."""

    def __init__(self) -> None:
        self.rows: list[dict[str, Any]] = []

    async def insert_place(self, user_id: str, list_id: str, place: dict[str, Any]) -> dict[str, Any]:
        row = {
            **place,
            "id": str(uuid.uuid4()),
            "list_id": list_id,
            "user_id": user_id,
            "created_at": datetime.now(UTC).isoformat(),
        }
        self.rows.append(row)
        return row


class SupabasePlaceWriter:
    """Writes to the list_places table."""

    def __init__(self, client, table: str = "list_places") -> None:
        self.client = client
        self.table = table

    async def insert_place(self, user_id: str, list_id: str, place: dict[str, Any]) -> dict[str, Any]:
        data = {**place, "list_id": list_id, "user_id": user_id}
        response = await self.client.table(self.table).insert(data).execute()
        rows = response.data or []
        if not rows:
            raise RuntimeError(f"Insert into {self.table} returned no row")
        logger.info("place_inserted", list_id=list_id, place_id=rows[0].get("id"))
        return rows[0]
