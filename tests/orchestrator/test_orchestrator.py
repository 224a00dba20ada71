import asyncio
import contextlib

import pytest

from snoopy.common.models import QueryLogRow, SignatureRecord, TaskStatus
from snoopy.orchestrator.orchestrator import TaskOrchestrator
from snoopy.orchestrator.task_store import TaskStore
from tests.common.mock_services import (
    CHUNK,
    DATASET,
    TX_HASH,
    FakeChain,
    FakeProver,
    FakeStore,
    FakeTrieLoader,
    Peer,
    make_row,
    make_signature,
    make_snapshot,
)

TS = 1_700_000_000
GOOD_HASH = b"\x01" * 32
BAD_HASH = b"\x02" * 32


def _scenario(
    count: int, worker_of: dict[int, int] | None = None
) -> tuple[list[QueryLogRow], list[SignatureRecord], list[str]]:
    """`count` executions of one query, q-0 is the disputed one with the outlier hash.

    q-1 is the most recent execution, q-{count-1} the oldest. `worker_of` maps a row index to
    the index of another row whose worker also executed it.
    """
    client = Peer()
    workers = [Peer() for _ in range(count)]
    worker_of = worker_of or {}
    rows, records = [], []
    for idx in range(count):
        worker = workers[worker_of.get(idx, idx)]
        row = make_row(f"q-{idx}", client, worker, TS * 1000 - idx * 1000)
        rows.append(row)
        records.append(make_signature(row, worker, BAD_HASH if idx == 0 else GOOD_HASH))
    return rows, records, [worker.peer_id for worker in workers]


def _loader(worker_ids: list[str], assignment_id: str = "assignment-1") -> FakeTrieLoader:
    snapshot = make_snapshot(worker_ids, [(DATASET, CHUNK, range(len(worker_ids)))])
    return FakeTrieLoader({assignment_id: snapshot})


def _orchestrator(task_store, store, chain, prover, loader) -> TaskOrchestrator:
    return TaskOrchestrator(
        task_store=task_store,
        store=store,
        chain=chain,
        prover=prover,
        network="mainnet",
        assignments_base_url="https://assignments.example",
        config_name="std-long",
        quorum_size=5,
        trie_loader=loader,
    )


@pytest.mark.asyncio
async def test_run_task_completes():
    rows, records, worker_ids = _scenario(6)
    task_store, chain, prover = TaskStore(), FakeChain(), FakeProver()
    loader = _loader(worker_ids)
    orchestrator = _orchestrator(task_store, FakeStore(rows, records), chain, prover, loader)
    task = await task_store.create("q-0", TS)

    result = await orchestrator.run_task(task)

    assert result.status == TaskStatus.COMPLETED
    assert result.comment == f"Transaction: {TX_HASH.hex()}"
    assert chain.submitted == [("std-long", b"\x03\x04", b"\x01\x02")]

    [evidence] = prover.calls
    # Disputed query first, then the most recent siblings, one bundle per worker.
    assert [bundle.query.query_id for bundle in evidence] == ["q-0", "q-1", "q-2", "q-3", "q-4"]
    assert evidence[0].query_result.data_hash == BAD_HASH
    assert all(bundle.query_result.data_hash == GOOD_HASH for bundle in evidence[1:])
    assert len({bundle.worker_id for bundle in evidence}) == 5
    assert len({bundle.tree_root for bundle in evidence}) == 1
    # One snapshot download per assignment.
    assert loader.sources == ["https://assignments.example/mainnet/assignment-1.fb.1.gz"]


@pytest.mark.asyncio
async def test_run_task_insufficient_siblings():
    rows, records, worker_ids = _scenario(4)
    task_store, prover = TaskStore(), FakeProver()
    orchestrator = _orchestrator(task_store, FakeStore(rows, records), FakeChain(), prover, _loader(worker_ids))
    task = await task_store.create("q-0", TS)

    result = await orchestrator.run_task(task)

    assert result.status == TaskStatus.FAILED
    assert "Insufficient evidence" in result.comment
    assert prover.calls == []


@pytest.mark.asyncio
async def test_run_task_no_assignments():
    rows, records, worker_ids = _scenario(6)
    # Contract has no assignment for any timestamp, nothing is eligible.
    chain = FakeChain(default="")
    task_store, prover = TaskStore(), FakeProver()
    store = FakeStore(rows, records)
    orchestrator = _orchestrator(task_store, store, chain, prover, _loader(worker_ids))
    task = await task_store.create("q-0", TS)

    result = await orchestrator.run_task(task)

    assert result.status == TaskStatus.FAILED
    assert "Insufficient evidence" in result.comment
    assert all(name != "signatures" for name, _ in store.calls)
    assert prover.calls == []


@pytest.mark.asyncio
async def test_run_task_one_bundle_per_worker():
    # q-2 was executed by the worker of q-1.
    rows, records, worker_ids = _scenario(7, worker_of={2: 1})
    task_store, prover = TaskStore(), FakeProver()
    orchestrator = _orchestrator(task_store, FakeStore(rows, records), FakeChain(), prover, _loader(worker_ids))
    task = await task_store.create("q-0", TS)

    result = await orchestrator.run_task(task)

    assert result.status == TaskStatus.COMPLETED
    [evidence] = prover.calls
    # The fresher q-1 wins, the quorum is filled from older rows.
    assert [bundle.query.query_id for bundle in evidence] == ["q-0", "q-1", "q-3", "q-4", "q-5"]
    assert len({bundle.worker_id for bundle in evidence}) == 5
    assert evidence[1].worker_id == rows[2].worker_id


@pytest.mark.asyncio
async def test_run_task_skips_failed_snapshot():
    rows, records, worker_ids = _scenario(7)
    # q-1 falls into an assignment whose snapshot cannot be downloaded.
    chain = FakeChain(assignment_ids={rows[1].client_timestamp // 1000: "assignment-missing"})
    task_store, prover = TaskStore(), FakeProver()
    loader = _loader(worker_ids)
    orchestrator = _orchestrator(task_store, FakeStore(rows, records), chain, prover, loader)
    task = await task_store.create("q-0", TS)

    result = await orchestrator.run_task(task)

    assert result.status == TaskStatus.COMPLETED
    [evidence] = prover.calls
    assert [bundle.query.query_id for bundle in evidence] == ["q-0", "q-2", "q-3", "q-4", "q-5"]
    assert "https://assignments.example/mainnet/assignment-missing.fb.1.gz" in loader.sources


@pytest.mark.asyncio
async def test_run_task_not_enough_bundles():
    rows, records, worker_ids = _scenario(5)
    # Snapshot assigns the chunk to the first three workers only.
    snapshot = make_snapshot(worker_ids, [(DATASET, CHUNK, [0, 1, 2])])
    task_store, prover = TaskStore(), FakeProver()
    loader = FakeTrieLoader({"assignment-1": snapshot})
    orchestrator = _orchestrator(task_store, FakeStore(rows, records), FakeChain(), prover, loader)
    task = await task_store.create("q-0", TS)

    result = await orchestrator.run_task(task)

    assert result.status == TaskStatus.FAILED
    assert "Insufficient evidence" in result.comment
    assert prover.calls == []


@pytest.mark.asyncio
async def test_run_task_original_not_found():
    task_store = TaskStore()
    orchestrator = _orchestrator(task_store, FakeStore(), FakeChain(), FakeProver(), _loader([]))
    task = await task_store.create("q-unknown", TS)

    result = await orchestrator.run_task(task)

    assert result.status == TaskStatus.FAILED
    assert result.comment.endswith("while searching for siblings")


@pytest.mark.asyncio
async def test_run_task_contract_failure():
    rows, records, worker_ids = _scenario(6)
    chain = FakeChain()
    chain.fail_lookup = True
    task_store = TaskStore()
    orchestrator = _orchestrator(task_store, FakeStore(rows, records), chain, FakeProver(), _loader(worker_ids))
    task = await task_store.create("q-0", TS)

    result = await orchestrator.run_task(task)

    assert result.status == TaskStatus.FAILED
    assert result.comment.endswith("while querying contract")


@pytest.mark.asyncio
async def test_run_task_prover_failure():
    rows, records, worker_ids = _scenario(6)
    task_store, chain = TaskStore(), FakeChain()
    prover = FakeProver(fail=True)
    orchestrator = _orchestrator(task_store, FakeStore(rows, records), chain, prover, _loader(worker_ids))
    task = await task_store.create("q-0", TS)

    result = await orchestrator.run_task(task)

    assert result.status == TaskStatus.FAILED
    assert result.comment.startswith("Failed to create zk proof")
    assert chain.submitted == []


@pytest.mark.asyncio
async def test_run_task_submit_failure():
    rows, records, worker_ids = _scenario(6)
    chain = FakeChain()
    chain.fail_submit = True
    task_store = TaskStore()
    orchestrator = _orchestrator(task_store, FakeStore(rows, records), chain, FakeProver(), _loader(worker_ids))
    task = await task_store.create("q-0", TS)

    result = await orchestrator.run_task(task)

    assert result.status == TaskStatus.FAILED
    assert result.comment.startswith("Failed to post proof")


@pytest.mark.asyncio
async def test_start_loop_processes_queue():
    rows, records, worker_ids = _scenario(6)
    task_store = TaskStore()
    orchestrator = _orchestrator(task_store, FakeStore(rows, records), FakeChain(), FakeProver(), _loader(worker_ids))
    missing = await task_store.create("q-unknown", TS)
    good = await task_store.create("q-0", TS)

    loop_task = asyncio.create_task(orchestrator.start_loop())
    try:
        for _ in range(100):
            done = await task_store.get(good.id)
            if done.status == TaskStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
    finally:
        await orchestrator.shutdown()
        loop_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await loop_task

    assert (await task_store.get(missing.id)).status == TaskStatus.FAILED
    assert (await task_store.get(good.id)).status == TaskStatus.COMPLETED
