import asyncio
import gzip
import struct
import zlib
from collections.abc import Iterator
from pathlib import Path

import aiohttp
import base58
from flatbuffers import encode, number_types, packer
from flatbuffers.table import Table
from loguru import logger
from pydantic import BaseModel

from snoopy.common.errors import DecodeError, SnapshotFetchError

_SNAPSHOT_TIMEOUT_SEC: float = 120.0

# Vtable slots of the assignment schema.
_ASSIGNMENT_DATASETS = 0
_ASSIGNMENT_WORKERS = 1
_DATASET_ID = 0
_DATASET_CHUNKS = 2
_CHUNK_ID = 0
_CHUNK_WORKER_INDEXES = 1
_WORKER_ID = 0


class ChunkAssignment(BaseModel):
    id: str
    worker_indexes: list[int]


class DatasetAssignment(BaseModel):
    id: str
    chunks: list[ChunkAssignment]


class AssignmentSnapshot(BaseModel):
    workers: list[str]
    datasets: list[DatasetAssignment]

    def chunk_workers(self) -> Iterator[tuple[str, str, list[str]]]:
        """Yield (dataset id, chunk id, sorted worker ids) for every chunk."""
        for dataset in self.datasets:
            for chunk in dataset.chunks:
                try:
                    workers = sorted(self.workers[idx] for idx in chunk.worker_indexes)
                except IndexError as exc:
                    raise DecodeError(
                        "Worker index out of range",
                        context={"dataset": dataset.id, "chunk": chunk.id, "workers": len(self.workers)},
                    ) from exc
                yield dataset.id, chunk.id, workers


async def fetch_snapshot(source: str, timeout: float = _SNAPSHOT_TIMEOUT_SEC) -> bytes:
    """Download or read a gzip compressed snapshot and return the decompressed buffer."""
    if source.startswith("http"):
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
                async with session.get(source) as response:
                    response.raise_for_status()
                    compressed = await response.read()
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise SnapshotFetchError(f"Failed to download assignment: {exc}", context={"source": source}) from exc
    else:
        try:
            compressed = await asyncio.to_thread(Path(source).read_bytes)
        except OSError as exc:
            raise SnapshotFetchError(f"Failed to read assignment: {exc}", context={"source": source}) from exc

    try:
        return gzip.decompress(compressed)
    except (OSError, EOFError, zlib.error) as exc:
        raise DecodeError(f"Assignment is not valid gzip: {exc}", context={"source": source}) from exc


def _field(tab: Table, slot: int) -> int:
    return number_types.UOffsetTFlags.py_type(tab.Offset(4 + 2 * slot))


def _string(tab: Table, slot: int) -> str:
    offset = _field(tab, slot)
    if not offset:
        return ""
    return tab.String(offset + tab.Pos).decode()


def _tables(tab: Table, slot: int) -> list[Table]:
    offset = _field(tab, slot)
    if not offset:
        return []
    start = tab.Vector(offset)
    return [Table(tab.Bytes, tab.Indirect(start + idx * 4)) for idx in range(tab.VectorLen(offset))]


def _uint16_vector(tab: Table, slot: int) -> list[int]:
    offset = _field(tab, slot)
    if not offset:
        return []
    start = tab.Vector(offset)
    return [tab.Get(number_types.Uint16Flags, start + idx * 2) for idx in range(tab.VectorLen(offset))]


def _byte_vector(tab: Table, slot: int) -> bytes:
    offset = _field(tab, slot)
    if not offset:
        return b""
    start = tab.Vector(offset)
    return bytes(tab.Bytes[start : start + tab.VectorLen(offset)])


def decode_assignment(buf: bytes) -> AssignmentSnapshot:
    """Decode the flatbuffers assignment schema.

    Assignment { datasets: [Dataset]; workers: [Worker] }
    Dataset    { id: string; base_url: string; chunks: [Chunk] }
    Chunk      { id: string; worker_indexes: [uint16] }
    Worker     { worker_id: [ubyte] }   raw peer id bytes
    """
    if len(buf) < 8:
        raise DecodeError(f"Assignment buffer too short: {len(buf)} bytes")
    try:
        root = Table(buf, encode.Get(packer.uoffset, buf, 0))
        workers = [
            base58.b58encode(_byte_vector(worker, _WORKER_ID)).decode()
            for worker in _tables(root, _ASSIGNMENT_WORKERS)
        ]
        datasets = [
            DatasetAssignment(
                id=_string(dataset, _DATASET_ID),
                chunks=[
                    ChunkAssignment(
                        id=_string(chunk, _CHUNK_ID),
                        worker_indexes=_uint16_vector(chunk, _CHUNK_WORKER_INDEXES),
                    )
                    for chunk in _tables(dataset, _DATASET_CHUNKS)
                ],
            )
            for dataset in _tables(root, _ASSIGNMENT_DATASETS)
        ]
    except (struct.error, IndexError, UnicodeDecodeError) as exc:
        raise DecodeError(f"Malformed assignment: {exc}") from exc

    logger.debug(f"Decoded assignment: {len(workers)} workers, {len(datasets)} datasets")
    return AssignmentSnapshot(workers=workers, datasets=datasets)
