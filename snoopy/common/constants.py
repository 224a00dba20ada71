NUMBER_OF_EVIDENCES_IN_ZK_PROOF: int = 5
TS_TOLERANCE_SEC: int = 300
TS_SEARCH_RANGE_SEC: int = 3600
ASSIGNMENTS_BASE_URL: str = "https://metadata.sqd-datasets.io/assignments"
ASSIGNMENT_FILE_SUFFIX: str = ".fb.1.gz"

# Worker ids inside a trie leaf value.
WORKER_SEPARATOR: str = "|"
# Width of the trie lookup key. Insert keys are full 32 byte keccak digests.
TRIE_LOOKUP_KEY_BYTES: int = 8

SUBMIT_CONFIRMATIONS: int = 2
SUBMIT_TIMEOUT_SEC: float = 60.0


def assignment_url(network: str, assignment_id: str, base_url: str = ASSIGNMENTS_BASE_URL) -> str:
    return f"{base_url.rstrip('/')}/{network}/{assignment_id}{ASSIGNMENT_FILE_SUFFIX}"
