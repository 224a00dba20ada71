from web3 import Web3

from snoopy.common.constants import TRIE_LOOKUP_KEY_BYTES


def keccak256(data: bytes) -> bytes:
    return bytes(Web3.keccak(data))


def composite_key(dataset_id: str, chunk_id: str) -> bytes:
    """Keccak-256 of "{dataset_id}|{chunk_id}", the trie insert key of a chunk."""
    return keccak256(f"{dataset_id}|{chunk_id}".encode())


def trie_lookup_key(dataset_id: str, chunk_id: str) -> bytes:
    """Truncated composite key used to request membership proofs.

    Kept at 8 bytes for compatibility with the deployed prover program, even though it narrows
    the collision resistance of the lookup compared to the 32 byte insert key.
    """
    return composite_key(dataset_id, chunk_id)[:TRIE_LOOKUP_KEY_BYTES]


def to_hex(data: bytes, upper: bool = False) -> str:
    text = data.hex()
    return text.upper() if upper else text
