import json
from collections.abc import Sequence
from typing import Any, Self

import aiohttp
from loguru import logger
from pydantic import BaseModel, ValidationError

from snoopy.common.errors import DecodeError, TransportError
from snoopy.common.models import QueryLogRow, QueryResult, SignatureRecord
from snoopy.services.store.store_base import EvidenceStoreBase

_QUERY_LOG_COLUMNS = (
    "query_id, client_id, worker_id, dataset_id, from_block, to_block, chunk_id, query, "
    "hex(query_hash) AS query_hash_hex, result, hex(output_hash) AS output_hash_hex, last_block, error_msg, "
    "hex(client_signature) AS client_signature_hex, client_timestamp, request_id"
)

_ORIGINAL_QUERY_SQL = f"""
SELECT {_QUERY_LOG_COLUMNS}
FROM worker_query_logs
WHERE worker_timestamp > {{ts_low:UInt64}}
  AND worker_timestamp < {{ts_high:UInt64}}
  AND query_id = {{query_id:String}}
FORMAT JSONEachRow
"""

_SIBLINGS_SQL = f"""
SELECT {_QUERY_LOG_COLUMNS}
FROM worker_query_logs
WHERE worker_timestamp > {{ts_low:UInt64}}
  AND worker_timestamp < {{ts_high:UInt64}}
  AND hex(query_hash) = {{query_hash:String}}
  AND from_block = {{from_block:Nullable(UInt64)}}
  AND to_block = {{to_block:Nullable(UInt64)}}
  AND result = {{result:String}}
FORMAT JSONEachRow
"""

_SIGNATURES_SQL = """
SELECT query_id, hex(worker_signature) AS worker_signature_hex, hex(result_hash) AS result_hash_hex
FROM portal_logs
WHERE collector_timestamp > {ts_low:UInt64}
  AND collector_timestamp < {ts_high:UInt64}
  AND query_id IN {query_ids:Array(String)}
FORMAT JSONEachRow
"""


_ESCAPES = str.maketrans({"\\": "\\\\", "\t": "\\t", "\n": "\\n", "\r": "\\r", "\0": "\\0"})


def _escape(text: str) -> str:
    return text.translate(_ESCAPES)


def _format_param(value: Any) -> str:
    """Render a query parameter in the ClickHouse escaped text format."""
    if value is None:
        return "\\N"
    if isinstance(value, list | tuple):
        quoted = [_escape(str(item)).replace("'", "\\'") for item in value]
        return "[" + ",".join(f"'{item}'" for item in quoted) + "]"
    return _escape(str(value))


def _rename_hex_columns(row: dict[str, Any]) -> dict[str, Any]:
    return {key.removesuffix("_hex"): value for key, value in row.items()}


class EvidenceStoreClickHouse(EvidenceStoreBase):
    def __init__(
        self,
        url: str = "http://localhost:8123",
        database: str = "mainnet",
        user: str = "subsqd_adm",
        password: str = "",
        timeout: float = 60.0,
    ):
        self._url = url
        self._database = database
        self._user = user
        self._password = password
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> Self:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"X-ClickHouse-User": self._user, "X-ClickHouse-Key": self._password},
            )
        return self

    async def shutdown(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def database(self) -> str:
        return self._database

    async def _fetch(self, sql: str, **params: Any) -> list[dict[str, Any]]:
        await self.start()
        assert self._session is not None
        query_params = {"database": self._database}
        query_params.update({f"param_{name}": _format_param(value) for name, value in params.items()})
        try:
            async with self._session.post(self._url, params=query_params, data=sql.encode()) as response:
                body = await response.text()
                if response.status != 200:
                    raise TransportError(
                        f"Store responded with status {response.status}: {body[:500]}",
                        context={"database": self._database},
                    )
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise TransportError(f"Store request failed: {exc}", context={"database": self._database}) from exc

        try:
            return [json.loads(line) for line in body.splitlines() if line.strip()]
        except json.JSONDecodeError as exc:
            raise DecodeError(f"Malformed store response: {exc}") from exc

    @staticmethod
    def _parse(rows: list[dict[str, Any]], model: type[BaseModel]) -> list[Any]:
        try:
            return [model.model_validate(_rename_hex_columns(row)) for row in rows]
        except ValidationError as exc:
            raise DecodeError(f"Unexpected {model.__name__} row: {exc}") from exc

    async def get_original_query(self, query_id: str, ts_low: int, ts_high: int) -> list[QueryLogRow]:
        logger.info(f"Params: {query_id} {ts_low} {ts_high}")
        rows = await self._fetch(_ORIGINAL_QUERY_SQL, ts_low=ts_low, ts_high=ts_high, query_id=query_id)
        return self._parse(rows, QueryLogRow)

    async def get_siblings(
        self, ts_low: int, ts_high: int, query_hash_hex: str, from_block: int | None, to_block: int | None
    ) -> list[QueryLogRow]:
        rows = await self._fetch(
            _SIBLINGS_SQL,
            ts_low=ts_low,
            ts_high=ts_high,
            query_hash=query_hash_hex,
            from_block=from_block,
            to_block=to_block,
            result=QueryResult.OK.value,
        )
        return self._parse(rows, QueryLogRow)

    async def get_signatures(self, ts_low: int, ts_high: int, query_ids: Sequence[str]) -> list[SignatureRecord]:
        rows = await self._fetch(_SIGNATURES_SQL, ts_low=ts_low, ts_high=ts_high, query_ids=list(query_ids))
        return self._parse(rows, SignatureRecord)
