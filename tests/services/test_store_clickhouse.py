import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from snoopy.common.errors import DecodeError, TransportError
from snoopy.common.models import QueryResult
from snoopy.services.store.store_clickhouse import EvidenceStoreClickHouse, _format_param, _rename_hex_columns

QUERY_ROW = {
    "query_id": "q-1",
    "client_id": "client",
    "worker_id": "worker",
    "dataset_id": "s3://eth",
    "from_block": 100,
    "to_block": None,
    "chunk_id": "chunk",
    "query": "{}",
    "query_hash_hex": "ABCD",
    "result": "ok",
    "output_hash_hex": "",
    "last_block": 150,
    "error_msg": "",
    "client_signature_hex": "0102",
    "client_timestamp": 1_700_000_000_000,
    "request_id": "r-1",
}


def _store_with_response(status: int = 200, body: str = "", raise_exc: Exception | None = None):
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=body)
    session = MagicMock()
    if raise_exc is not None:
        session.post.side_effect = raise_exc
    else:
        session.post.return_value.__aenter__.return_value = response

    store = EvidenceStoreClickHouse(url="http://clickhouse:8123", database="mainnet", password="pw")
    store._session = session
    return store, session


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, "\\N"),
        (42, "42"),
        ("ABCD", "ABCD"),
        (["a", "b"], "['a','b']"),
        (["it's"], "['it\\'s']"),
        ([], "[]"),
        ("q\\1", "q\\\\1"),
        ("q\t1\n", "q\\t1\\n"),
        (["a\\b\tc"], "['a\\\\b\\tc']"),
    ],
)
def test_format_param(value, expected) -> None:
    assert _format_param(value) == expected


def test_rename_hex_columns() -> None:
    assert _rename_hex_columns({"query_hash_hex": "AB", "query_id": "q"}) == {"query_hash": "AB", "query_id": "q"}


@pytest.mark.asyncio
async def test_get_original_query_parses_rows() -> None:
    store, session = _store_with_response(body=json.dumps(QUERY_ROW) + "\n")

    rows = await store.get_original_query("q-1", 100, 200)

    assert len(rows) == 1
    row = rows[0]
    assert row.query_hash == b"\xab\xcd"
    assert row.client_signature == b"\x01\x02"
    assert row.output_hash == b""
    assert row.to_block is None
    assert row.result == QueryResult.OK

    params = session.post.call_args.kwargs["params"]
    assert params["database"] == "mainnet"
    assert params["param_query_id"] == "q-1"
    assert params["param_ts_low"] == "100"
    assert params["param_ts_high"] == "200"


@pytest.mark.asyncio
async def test_get_siblings_params() -> None:
    store, session = _store_with_response(body="")

    rows = await store.get_siblings(1, 2, "ABCD", 100, None)

    assert rows == []
    params = session.post.call_args.kwargs["params"]
    assert params["param_query_hash"] == "ABCD"
    assert params["param_from_block"] == "100"
    assert params["param_to_block"] == "\\N"
    assert params["param_result"] == "ok"


@pytest.mark.asyncio
async def test_get_signatures() -> None:
    body = json.dumps({"query_id": "q-1", "worker_signature_hex": "AA", "result_hash_hex": "BB"})
    store, session = _store_with_response(body=body)

    records = await store.get_signatures(1, 2, ["q-1", "q-2"])

    assert records[0].worker_signature == b"\xaa"
    assert records[0].result_hash == b"\xbb"
    assert session.post.call_args.kwargs["params"]["param_query_ids"] == "['q-1','q-2']"


@pytest.mark.asyncio
async def test_fetch_bad_status() -> None:
    store, _ = _store_with_response(status=500, body="Code: 60. DB::Exception: Table does not exist")

    with pytest.raises(TransportError, match="500"):
        await store.get_signatures(1, 2, ["q-1"])


@pytest.mark.asyncio
async def test_fetch_connection_error() -> None:
    store, _ = _store_with_response(raise_exc=aiohttp.ClientConnectionError("refused"))

    with pytest.raises(TransportError):
        await store.get_original_query("q-1", 1, 2)


@pytest.mark.asyncio
async def test_fetch_malformed_json() -> None:
    store, _ = _store_with_response(body="{not json")

    with pytest.raises(DecodeError):
        await store.get_original_query("q-1", 1, 2)


@pytest.mark.asyncio
async def test_unexpected_row_shape() -> None:
    store, _ = _store_with_response(body=json.dumps({"query_id": "q-1"}))

    with pytest.raises(DecodeError):
        await store.get_original_query("q-1", 1, 2)
