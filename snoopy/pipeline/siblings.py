from collections.abc import Sequence

from loguru import logger

from snoopy.common.chain import ChainGateway
from snoopy.common.errors import OriginalQueryNotFound
from snoopy.common.hashing import to_hex
from snoopy.common.models import QueryLogRow
from snoopy.services.store.store_base import EvidenceStoreBase


def dedup_by_query_id(rows: Sequence[QueryLogRow]) -> list[QueryLogRow]:
    """Sort by query id and keep the first row of every run of equal ids."""
    unique: list[QueryLogRow] = []
    for row in sorted(rows, key=lambda row: row.query_id):
        if unique and unique[-1].query_id == row.query_id:
            continue
        unique.append(row)
    return unique


async def find_siblings(
    store: EvidenceStoreBase, query_id: str, ts: int, ts_tolerance: int, ts_search_range: int
) -> list[QueryLogRow]:
    """Find rows answering the same logical query as `query_id`.

    The original row is pinned within `ts ± ts_tolerance`, siblings share its query hash and
    block range and succeeded within the wider `ts ± ts_search_range` window.

    Raises:
        OriginalQueryNotFound: Zero or several rows match the disputed query.
    """
    originals = await store.get_original_query(query_id, max(ts - ts_tolerance, 0), ts + ts_tolerance)
    if len(originals) != 1:
        raise OriginalQueryNotFound(
            f"Expected exactly one row for the disputed query, found {len(originals)}",
            step="siblings",
            context={"query_id": query_id, "ts": ts},
        )
    original = originals[0]
    query_hash_hex = to_hex(original.query_hash, upper=True)
    logger.info(f"Found query hash: {query_hash_hex}")

    siblings = await store.get_siblings(
        max(ts - ts_search_range, 0),
        ts + ts_search_range,
        query_hash_hex,
        original.from_block,
        original.to_block,
    )
    logger.info(f"Found {len(siblings)} queries with same hash")

    unique = dedup_by_query_id(siblings)
    logger.info(f"After filtering got {len(unique)} unique queries")
    return unique


async def resolve_assignment_ids(rows: Sequence[QueryLogRow], chain: ChainGateway) -> dict[str, str]:
    """Map query id -> assignment id in effect at the row's client timestamp.

    Rows without an assignment are left out. Transport errors propagate.
    """
    assignment_ids: dict[str, str] = {}
    for row in rows:
        assignment_id = await chain.assignment_id_by_timestamp(row.client_timestamp // 1000)
        if assignment_id:
            assignment_ids[row.query_id] = assignment_id
    logger.debug(f"Resolved assignment ids for {len(assignment_ids)}/{len(rows)} queries")
    return assignment_ids


def filter_eligible(
    siblings: Sequence[QueryLogRow], assignment_ids: dict[str, str], disputed_query_id: str
) -> list[QueryLogRow]:
    """Rows with a known assignment, disputed query first, then most recent first."""
    eligible = [row for row in siblings if row.query_id in assignment_ids]
    logger.info(f"Found {len(eligible)} eligible queries")
    eligible.sort(key=lambda row: (row.query_id != disputed_query_id, -row.client_timestamp))
    return eligible
