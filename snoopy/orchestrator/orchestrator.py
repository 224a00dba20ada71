import uuid
from collections.abc import Awaitable, Callable

from loguru import logger

from snoopy.common.chain import ChainGateway
from snoopy.common.constants import (
    ASSIGNMENTS_BASE_URL,
    NUMBER_OF_EVIDENCES_IN_ZK_PROOF,
    TS_SEARCH_RANGE_SEC,
    TS_TOLERANCE_SEC,
    assignment_url,
)
from snoopy.common.errors import InsufficientEvidenceError, SnoopyError
from snoopy.common.hashing import to_hex
from snoopy.common.models import EvidenceBundle, QueryLogRow, Task, TaskStatus
from snoopy.orchestrator.task_store import TaskStore
from snoopy.pipeline.consensus import compute_plurality
from snoopy.pipeline.evidence import assemble_evidence
from snoopy.pipeline.siblings import filter_eligible, find_siblings, resolve_assignment_ids
from snoopy.services.prover.prover_base import ProverBase
from snoopy.services.store.store_base import EvidenceStoreBase
from snoopy.trie.builder import load_assignment_trie, prove_membership
from snoopy.trie.mpt import MerklePatriciaTrie

TrieLoader = Callable[[str], Awaitable[MerklePatriciaTrie]]


class TaskOrchestrator:
    """Runs fraud proof tasks one at a time, from sibling discovery to proof submission.

    Args:
        task_store: Shared task collection feeding the loop.
        store: Query log store.
        chain: Commitment lookups and proof submission.
        prover: Zk prover consuming the evidence list.
        network: Network name used in assignment snapshot urls.
        assignments_base_url: Root url (or directory) of assignment snapshots.
        ts_tolerance: Window in seconds pinning the disputed query.
        ts_search_range: Window in seconds for siblings and signatures.
        config_name: Proving manager config the proof is verified against.
        quorum_size: Evidence bundles required per proof.
        trie_loader: Builds an assignment trie from a snapshot url or path.
    """

    def __init__(
        self,
        task_store: TaskStore,
        store: EvidenceStoreBase,
        chain: ChainGateway,
        prover: ProverBase,
        network: str = "mainnet",
        assignments_base_url: str = ASSIGNMENTS_BASE_URL,
        ts_tolerance: int = TS_TOLERANCE_SEC,
        ts_search_range: int = TS_SEARCH_RANGE_SEC,
        config_name: str = "std-long",
        quorum_size: int = NUMBER_OF_EVIDENCES_IN_ZK_PROOF,
        trie_loader: TrieLoader = load_assignment_trie,
    ):
        self.task_store = task_store
        self.store = store
        self.chain = chain
        self.prover = prover
        self.network = network
        self.assignments_base_url = assignments_base_url
        self.ts_tolerance = ts_tolerance
        self.ts_search_range = ts_search_range
        self.config_name = config_name
        self.quorum_size = quorum_size
        self._trie_loader = trie_loader
        self._running = True

    async def start_loop(self) -> None:
        """Consume pending tasks forever, one task end-to-end at a time."""
        self._running = True
        while self._running:
            task = await self.task_store.next_pending()
            logger.info(
                f"Processing task {task.id}: query {task.query_id} at {task.ts}, "
                f"{self.task_store.queue_size} more queued"
            )
            try:
                task = await self.run_task(task)
                logger.info(f"Task {task.id} finished with status {task.status.value}: {task.comment}")
            except Exception as exc:
                logger.exception(f"Unexpected error in task {task.id}")
                try:
                    await self._set(task.id, TaskStatus.FAILED, f"Unexpected error: {exc}")
                except SnoopyError as transition_exc:
                    logger.error(f"Could not mark task {task.id} as failed: {transition_exc}")

    async def shutdown(self) -> None:
        self._running = False

    async def _set(self, task_id: uuid.UUID, status: TaskStatus, comment: str | None = None) -> Task:
        return await self.task_store.transition(task_id, status, comment)

    async def _insufficient(self, task: Task, step: str, counts: dict[str, int]) -> Task:
        error = InsufficientEvidenceError(
            "Insufficient evidence: not enough evidence to create fraud proof",
            step=step,
            context={**counts, "required": self.quorum_size},
        )
        return await self._set(task.id, TaskStatus.FAILED, str(error))

    async def run_task(self, task: Task) -> Task:
        await self._set(task.id, TaskStatus.RUNNING)

        try:
            siblings = await find_siblings(
                self.store, task.query_id, task.ts, self.ts_tolerance, self.ts_search_range
            )
        except SnoopyError as exc:
            return await self._set(task.id, TaskStatus.FAILED, f"Got {exc} while searching for siblings")
        await self._set(task.id, TaskStatus.RUNNING, "Got siblings")

        try:
            assignment_ids = await resolve_assignment_ids(siblings, self.chain)
        except SnoopyError as exc:
            return await self._set(task.id, TaskStatus.FAILED, f"Got {exc} while querying contract")
        await self._set(task.id, TaskStatus.RUNNING, "Got assignment id map")

        eligible = filter_eligible(siblings, assignment_ids, task.query_id)
        if len(eligible) < self.quorum_size:
            return await self._insufficient(task, "eligible", {"eligible": len(eligible)})

        try:
            signatures = await compute_plurality(
                self.store, eligible, task.ts, self.ts_search_range, task.query_id
            )
        except SnoopyError as exc:
            return await self._set(task.id, TaskStatus.FAILED, f"Got {exc} while getting signatures")
        await self._set(task.id, TaskStatus.RUNNING, "Got signatures")

        if len(signatures) < self.quorum_size:
            return await self._insufficient(task, "quorum", {"signed": len(signatures)})

        proofs = await self._collect_evidence(task, eligible, assignment_ids, signatures)
        if len(proofs) < self.quorum_size:
            return await self._insufficient(task, "evidence", {"bundles": len(proofs)})

        try:
            proof = await self.prover.prove(proofs)
        except SnoopyError as exc:
            return await self._set(task.id, TaskStatus.FAILED, f"Failed to create zk proof: {exc}")
        await self._set(task.id, TaskStatus.RUNNING, "Got zk proof")

        try:
            tx_hash = await self.chain.submit_proof(self.config_name, proof.public_values, proof.proof_bytes)
        except SnoopyError as exc:
            return await self._set(task.id, TaskStatus.FAILED, f"Failed to post proof: {exc}")

        return await self._set(task.id, TaskStatus.COMPLETED, f"Transaction: {to_hex(tx_hash)}")

    async def _collect_evidence(
        self,
        task: Task,
        eligible: list[QueryLogRow],
        assignment_ids: dict[str, str],
        signatures: dict[str, tuple[bytes, bytes]],
    ) -> list[EvidenceBundle]:
        """Build one bundle per worker in eligible order until the quorum is reached.

        Failing rows are logged and skipped.
        """
        used_workers: set[str] = set()
        proofs: list[EvidenceBundle] = []
        # Tries built during this task, keyed by assignment id.
        tries: dict[str, MerklePatriciaTrie] = {}

        for row in eligible:
            if len(proofs) >= self.quorum_size:
                break
            if row.worker_id in used_workers:
                continue
            if row.query_id not in signatures:
                continue
            assignment_id = assignment_ids.get(row.query_id)
            if assignment_id is None:
                continue

            logger.info(f"Trying Query ID: {row.query_id}")
            result_hash, worker_signature = signatures[row.query_id]
            try:
                trie = tries.get(assignment_id)
                if trie is None:
                    trie = await self._trie_loader(
                        assignment_url(self.network, assignment_id, self.assignments_base_url)
                    )
                    tries[assignment_id] = trie
                tree_root = trie.root_hash()
                logger.info(f"Assignment commitment: {to_hex(tree_root)}")
                mpt_proof = prove_membership(trie, row.dataset_id, row.chunk_id, row.worker_id)
                bundle = assemble_evidence(row, result_hash, worker_signature, tree_root, mpt_proof)
            except SnoopyError as exc:
                logger.error(f"Failed to generate proof data for {row.query_id} ({assignment_id}): {exc}")
                continue

            used_workers.add(row.worker_id)
            proofs.append(bundle)
            await self._set(task.id, TaskStatus.RUNNING, f"Got proofs {len(proofs)}/{self.quorum_size}")

        return proofs
