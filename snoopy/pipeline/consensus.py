from collections import Counter
from collections.abc import Sequence

from loguru import logger

from snoopy.common.errors import NoQuorum
from snoopy.common.hashing import to_hex
from snoopy.common.models import QueryLogRow, SignatureRecord
from snoopy.services.store.store_base import EvidenceStoreBase


def plurality_hash(records: Sequence[SignatureRecord]) -> tuple[bytes, int]:
    """Most frequent result hash and its count.

    Ties go to the lexicographically smallest hash so the choice does not depend on the order
    the store returned rows in.
    """
    counts = Counter(record.result_hash for record in records)
    if not counts:
        raise NoQuorum("Plurality not found", step="consensus")
    winner = min(counts, key=lambda result_hash: (-counts[result_hash], result_hash))
    return winner, counts[winner]


def select_consensus(
    records: Sequence[SignatureRecord], disputed_query_id: str
) -> dict[str, tuple[bytes, bytes]]:
    """Map query id -> (result hash, worker signature) for records agreeing with the plurality.

    The disputed query is always kept, even when its hash is the outlier.
    """
    plurality, count = plurality_hash(records)
    logger.info(f"Most frequent hash: {to_hex(plurality, upper=True)} ({count}/{len(records)})")
    return {
        record.query_id: (record.result_hash, record.worker_signature)
        for record in records
        if record.result_hash == plurality or record.query_id == disputed_query_id
    }


async def compute_plurality(
    store: EvidenceStoreBase,
    eligible: Sequence[QueryLogRow],
    ts: int,
    ts_search_range: int,
    disputed_query_id: str,
) -> dict[str, tuple[bytes, bytes]]:
    """Fetch worker signatures of the eligible rows and keep the consensus set.

    Raises:
        NoQuorum: No signatures were found.
    """
    if not eligible:
        raise NoQuorum("No eligible queries to collect signatures for", step="consensus")

    records = await store.get_signatures(
        max(ts - ts_search_range, 0), ts + ts_search_range, [row.query_id for row in eligible]
    )
    logger.debug(f"Signature rows: {records}")
    return select_consensus(records, disputed_query_id)
