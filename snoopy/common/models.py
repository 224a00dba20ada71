import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer


def _parse_hex(value: Any) -> Any:
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        return bytes.fromhex(text)
    return value


# Store returns byte columns as hex, JSON output is always 0x-prefixed hex.
HexBytes = Annotated[
    bytes,
    BeforeValidator(_parse_hex),
    PlainSerializer(lambda value: "0x" + value.hex(), return_type=str, when_used="json"),
]


class QueryResult(str, Enum):
    """Result code of an executed query as stored in the worker query log."""

    OK = "ok"
    BAD_REQUEST = "bad_request"
    SERVER_ERROR = "server_error"
    NOT_FOUND = "not_found"
    SERVER_OVERLOADED = "server_overloaded"
    TOO_MANY_REQUESTS = "too_many_requests"


class QueryLogRow(BaseModel):
    """One executed query from the worker query log."""

    model_config = ConfigDict(frozen=True)

    query_id: str
    client_id: str
    worker_id: str
    dataset_id: str
    from_block: int | None = None
    to_block: int | None = None
    chunk_id: str
    query: str
    query_hash: HexBytes
    result: QueryResult
    output_hash: HexBytes = b""
    last_block: int | None = None
    error_msg: str = ""
    client_signature: HexBytes
    # Milliseconds.
    client_timestamp: int
    request_id: str


class SignatureRecord(BaseModel):
    """Worker signed result hash collected by the portal."""

    model_config = ConfigDict(frozen=True)

    query_id: str
    worker_signature: HexBytes
    result_hash: HexBytes


class SignedQuery(BaseModel):
    query_id: str
    request_id: str
    dataset: str
    query: str
    from_block: int
    to_block: int
    chunk_id: str
    timestamp_ms: int
    signature: HexBytes


class QueryFinished(BaseModel):
    query_id: str
    worker_id: str
    data_hash: HexBytes
    last_block: int
    uncompressed_data_size: int = 0
    total_time_micros: int = 0
    worker_signature: HexBytes


class EvidenceBundle(BaseModel):
    """Verified proof input for one worker."""

    query: SignedQuery
    query_result: QueryFinished
    mpt_proof: list[HexBytes]
    worker_id: str
    client_id: str
    tree_root: HexBytes


class ProofResult(BaseModel):
    proof_bytes: HexBytes
    public_values: HexBytes
    verification_key: str | None = None


class TaskStatus(str, Enum):
    NOT_FOUND = "NotFound"
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


class Task(BaseModel):
    id: uuid.UUID
    query_id: str
    ts: int
    status: TaskStatus
    comment: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def not_found(cls, task_id: uuid.UUID) -> "Task":
        return cls(id=task_id, query_id="", ts=0, status=TaskStatus.NOT_FOUND)


class TaskDescription(BaseModel):
    """Body of a task submission."""

    query_id: str = Field(validation_alias=AliasChoices("query_id", "queryId"))
    # Seconds.
    ts: int = Field(ge=0, validation_alias=AliasChoices("ts", "timestamp"))
