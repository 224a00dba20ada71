from snoopy.common.errors import DecodeError, SignatureInvalid
from snoopy.common.models import EvidenceBundle, QueryFinished, QueryLogRow, SignedQuery
from snoopy.common.signatures import verify_query, verify_result


def signed_query_from_row(row: QueryLogRow) -> SignedQuery:
    if row.from_block is None or row.to_block is None:
        raise DecodeError("Block range not found for query", step="evidence", context={"query_id": row.query_id})
    return SignedQuery(
        query_id=row.query_id,
        request_id=row.request_id,
        dataset=row.dataset_id,
        query=row.query,
        from_block=row.from_block,
        to_block=row.to_block,
        chunk_id=row.chunk_id,
        timestamp_ms=row.client_timestamp,
        signature=row.client_signature,
    )


def query_finished_from_row(row: QueryLogRow, result_hash: bytes, worker_signature: bytes) -> QueryFinished:
    if row.last_block is None:
        raise DecodeError("Last block not found for query", step="evidence", context={"query_id": row.query_id})
    return QueryFinished(
        query_id=row.query_id,
        worker_id=row.worker_id,
        data_hash=result_hash,
        last_block=row.last_block,
        worker_signature=worker_signature,
    )


def assemble_evidence(
    row: QueryLogRow,
    result_hash: bytes,
    worker_signature: bytes,
    tree_root: bytes,
    mpt_proof: list[bytes],
) -> EvidenceBundle:
    """Rebuild the signed query and result of `row` and verify both signatures.

    Raises:
        SignatureInvalid: The client did not sign the query for this worker, or the worker did
            not sign the result.
        DecodeError: The row lacks the block fields needed to rebuild the messages.
    """
    query = signed_query_from_row(row)
    if not verify_query(query, client_id=row.client_id, worker_id=row.worker_id):
        raise SignatureInvalid(
            "Query signature verification failed", step="evidence", context={"query_id": row.query_id}
        )

    query_result = query_finished_from_row(row, result_hash, worker_signature)
    if not verify_result(query_result):
        raise SignatureInvalid(
            "Query Result signature verification failed", step="evidence", context={"query_id": row.query_id}
        )

    return EvidenceBundle(
        query=query,
        query_result=query_result,
        mpt_proof=mpt_proof,
        worker_id=row.worker_id,
        client_id=row.client_id,
        tree_root=tree_root,
    )
