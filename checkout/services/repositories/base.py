"""Base repository with shared Supabase client."""

from supabase._async.client import AsyncClient


class BaseRepository:
    """Base class for all repositories.

    All methods await the async client's ``execute()``.
    """

    table: str = ""

    def __init__(self, client: AsyncClient) -> None:
        self.client = client

    def query(self):
        return self.client.table(self.table)

    async def _delete_batch(self, select_ids, id_column: str, extra_filters=None) -> int:
        """
        Delete one bounded batch: ``select_ids`` is an already-limited select of
        ``id_column``; the delete repeats ``extra_filters`` so rows that changed
        in between are left alone.
        """
        result = await select_ids.execute()
        ids = [row[id_column] for row in (result.data or [])]
        if not ids:
            return 0

        query = self.query().delete().in_(id_column, ids)
        if extra_filters:
            query = extra_filters(query)
        deleted = await query.execute()
        return len(deleted.data or [])
