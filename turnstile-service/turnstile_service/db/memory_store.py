import copy
import logging

from .kv_store import check_table, now_ms

logger = logging.getLogger(__name__)


class InMemoryKeyValueStore:
    """Process-local KeyValueStore for development and tests.

    Same visibility rules as the Oracle store: expired records are skipped on
    read and dropped by ``purge_expired``. Items are deep-copied on the way in
    and out so callers never share mutable state with the store.
    """

    def __init__(self):
        self._tables: dict[str, dict[tuple[str, str], tuple[dict, int | None]]] = {}

    def _table(self, table: str) -> dict:
        return self._tables.setdefault(check_table(table), {})

    @staticmethod
    def _live(expires_at: int | None) -> bool:
        return expires_at is None or expires_at > now_ms()

    async def get(self, table: str, partition_key: str, sort_key: str = "") -> dict | None:
        entry = self._table(table).get((partition_key, sort_key))
        if entry is None or not self._live(entry[1]):
            return None
        return copy.deepcopy(entry[0])

    async def put(self, table: str, partition_key: str, sort_key: str, item: dict,
                  expires_at: int | None = None) -> None:
        self._table(table)[(partition_key, sort_key)] = (copy.deepcopy(item), expires_at)

    async def update(self, table: str, partition_key: str, sort_key: str, changes: dict,
                     expires_at: int | None = None) -> bool:
        records = self._table(table)
        entry = records.get((partition_key, sort_key))
        if entry is None or not self._live(entry[1]):
            return False
        item, old_expires = entry
        merged = {**item, **copy.deepcopy(changes)}
        records[(partition_key, sort_key)] = (
            merged,
            expires_at if expires_at is not None else old_expires,
        )
        return True

    async def delete(self, table: str, partition_key: str, sort_key: str = "") -> int:
        removed = self._table(table).pop((partition_key, sort_key), None)
        return 1 if removed is not None else 0

    async def query(self, table: str, partition_key: str, sort_key_prefix: str | None = None,
                    limit: int | None = None, reverse: bool = False) -> list[dict]:
        matches = [
            (sk, item)
            for (pk, sk), (item, expires_at) in self._table(table).items()
            if pk == partition_key
            and (not sort_key_prefix or sk.startswith(sort_key_prefix))
            and self._live(expires_at)
        ]
        matches.sort(key=lambda m: m[0], reverse=reverse)
        if limit is not None:
            matches = matches[:limit]
        return [copy.deepcopy(item) for _, item in matches]

    async def purge_expired(self, table: str) -> int:
        records = self._table(table)
        expired = [key for key, (_, expires_at) in records.items() if not self._live(expires_at)]
        for key in expired:
            del records[key]
        logger.info("Purged %d expired records from %s", len(expired), table)
        return len(expired)
