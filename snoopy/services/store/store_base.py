from collections.abc import Sequence

from snoopy.common.models import QueryLogRow, SignatureRecord


class EvidenceStoreBase:
    """Read-only access to the network's query logs.

    All time bounds are exclusive and expressed in seconds.
    """

    async def get_original_query(self, query_id: str, ts_low: int, ts_high: int) -> list[QueryLogRow]:
        """Log rows of `query_id` executed within the window, callers expect exactly one."""
        raise NotImplementedError

    async def get_siblings(
        self, ts_low: int, ts_high: int, query_hash_hex: str, from_block: int | None, to_block: int | None
    ) -> list[QueryLogRow]:
        """Successful log rows with the same query hash and block range."""
        raise NotImplementedError

    async def get_signatures(self, ts_low: int, ts_high: int, query_ids: Sequence[str]) -> list[SignatureRecord]:
        raise NotImplementedError
