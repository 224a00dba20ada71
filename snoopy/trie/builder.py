from loguru import logger

from snoopy.common.constants import WORKER_SEPARATOR
from snoopy.common.errors import DecodeError, NotAssignedError, VerificationError
from snoopy.common.hashing import composite_key, trie_lookup_key
from snoopy.trie.mpt import MerklePatriciaTrie, leaf_value, verify_proof_chain
from snoopy.trie.snapshot import AssignmentSnapshot, decode_assignment, fetch_snapshot


def build_trie(snapshot: AssignmentSnapshot) -> MerklePatriciaTrie:
    """Insert keccak(dataset|chunk) -> "|"-joined sorted worker ids for every assigned chunk."""
    trie = MerklePatriciaTrie()
    for dataset_id, chunk_id, workers in snapshot.chunk_workers():
        if not workers:
            # An empty value is a deletion in the trie, unassigned chunks have no leaf.
            continue
        trie.insert(composite_key(dataset_id, chunk_id), WORKER_SEPARATOR.join(workers).encode())
    return trie


async def load_assignment_trie(source: str) -> MerklePatriciaTrie:
    """Fetch, decompress and decode the snapshot at `source` and build its trie."""
    buf = await fetch_snapshot(source)
    snapshot = decode_assignment(buf)
    trie = build_trie(snapshot)
    logger.debug(f"Built assignment trie from {source}: {len(trie)} chunks")
    return trie


def prove_membership(trie: MerklePatriciaTrie, dataset_id: str, chunk_id: str, worker_id: str) -> list[bytes]:
    """Membership proof of the chunk's assignment leaf, checked to list `worker_id`.

    Raises:
        NotAssignedError: The leaf reached by the proof does not list the worker.
        VerificationError: The proof nodes do not chain up to the trie root.
        DecodeError: The proof does not end in a readable leaf.
    """
    proof = trie.get_proof(trie_lookup_key(dataset_id, chunk_id))
    if not proof:
        raise NotAssignedError("Empty leaf in proof", context={"dataset": dataset_id, "chunk": chunk_id})
    if not verify_proof_chain(trie.root_hash(), proof):
        raise VerificationError(
            "Proof does not link to the trie root", context={"dataset": dataset_id, "chunk": chunk_id}
        )

    try:
        payload = leaf_value(proof[-1]).decode()
    except UnicodeDecodeError as exc:
        raise DecodeError("Leaf value is not text", context={"dataset": dataset_id, "chunk": chunk_id}) from exc

    if worker_id not in payload.split(WORKER_SEPARATOR):
        raise NotAssignedError(
            "Wrong assignment", context={"dataset": dataset_id, "chunk": chunk_id, "worker": worker_id}
        )
    return proof
