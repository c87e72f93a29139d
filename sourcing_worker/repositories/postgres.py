from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from sourcing_worker.repositories.base import (
    DEFAULT_BATCH_SIZE,
    OpportunityRepository,
    RecordT,
    RepositoryUnavailableError,
)

logger = logging.getLogger(__name__)

# asyncpg caps a statement at 32767 bind parameters.
MAX_BIND_PARAMETERS = 32767


class Database:
    """Process-wide asyncpg pool shared by repositories, the queue and the refresher."""

    def __init__(self, database_url: str | None, *, min_pool_size: int = 1, max_pool_size: int = 10) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SW_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=60,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


@dataclass(slots=True, frozen=True)
class Column:
    name: str
    sql_type: str
    nullable: bool = True


@dataclass(slots=True, frozen=True)
class TableSpec:
    table: str
    columns: tuple[Column, ...]

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    def row_values(self, record: Any) -> list[Any]:
        values: list[Any] = []
        for column in self.columns:
            value = getattr(record, column.name)
            if column.sql_type == "jsonb" and value is not None:
                value = json.dumps(value)
            values.append(value)
        return values


BASE_COLUMNS = (
    Column("external_id", "text", nullable=False),
    Column("source", "text", nullable=False),
    Column("label", "text", nullable=False),
    Column("address", "text"),
    Column("city", "text"),
    Column("zip_code", "text"),
    Column("department", "text"),
    Column("latitude", "double precision"),
    Column("longitude", "double precision"),
    Column("opportunity_date", "date"),
    Column("main_picture", "text"),
    Column("pictures", "text[]"),
)

AUCTION_TABLE = TableSpec(
    table="auction",
    columns=BASE_COLUMNS
    + (
        Column("url", "text", nullable=False),
        Column("property_type", "text"),
        Column("description", "text"),
        Column("current_price", "double precision"),
        Column("lower_estimate", "double precision"),
        Column("upper_estimate", "double precision"),
        Column("reserve_price", "double precision"),
        Column("energy_class", "text"),
        Column("square_footage", "double precision"),
        Column("rooms", "integer"),
        Column("auction_venue", "text"),
        Column("occupation_status", "text"),
    ),
)

LISTING_TABLE = TableSpec(
    table="listing",
    columns=BASE_COLUMNS
    + (
        Column("url", "text", nullable=False),
        Column("transaction_type", "text"),
        Column("property_type", "text"),
        Column("description", "text"),
        Column("price", "double precision"),
        Column("price_type", "text"),
        Column("square_footage", "double precision"),
        Column("land_area", "double precision"),
        Column("rooms", "integer"),
        Column("bedrooms", "integer"),
        Column("construction_year", "integer"),
        Column("parking", "boolean"),
        Column("energy_class", "text"),
        Column("notary_office", "jsonb"),
    ),
)

SUCCESSION_TABLE = TableSpec(
    table="succession",
    columns=BASE_COLUMNS
    + (
        Column("first_name", "text"),
        Column("last_name", "text"),
        Column("birth_date", "date"),
        Column("mairie_contact", "jsonb"),
    ),
)

ENERGY_DIAGNOSTIC_TABLE = TableSpec(
    table="energy_diagnostic",
    columns=BASE_COLUMNS
    + (
        Column("energy_class", "text", nullable=False),
        Column("ges_class", "text"),
        Column("building_type", "text"),
        Column("construction_year", "integer"),
        Column("square_footage", "double precision"),
    ),
)

LIQUIDATION_TABLE = TableSpec(
    table="liquidation",
    columns=BASE_COLUMNS
    + (
        Column("siret", "text", nullable=False),
        Column("company_contact", "jsonb"),
    ),
)

TABLE_SPECS = (AUCTION_TABLE, LISTING_TABLE, SUCCESSION_TABLE, ENERGY_DIAGNOSTIC_TABLE, LIQUIDATION_TABLE)


def render_insert_sql(spec: TableSpec, row_count: int) -> str:
    width = len(spec.columns)
    placeholders = []
    for row_index in range(row_count):
        offset = row_index * width
        params = ", ".join(f"${offset + index + 1}::{column.sql_type}" for index, column in enumerate(spec.columns))
        placeholders.append(f"({params})")
    values_sql = ",\n              ".join(placeholders)
    return f"""
            insert into {spec.table} ({", ".join(spec.column_names)})
            values
              {values_sql}
            on conflict (external_id) do nothing
            returning external_id
            """


class PostgresOpportunityRepository(OpportunityRepository[RecordT]):
    def __init__(self, database: Database, spec: TableSpec, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        super().__init__(batch_size=batch_size, max_batch_size=MAX_BIND_PARAMETERS // len(spec.columns))
        self.database = database
        self.spec = spec
        self.table = spec.table

    async def get_all_external_ids(self) -> list[str]:
        pool = await self.database.get_pool()
        rows = await pool.fetch(f"select external_id from {self.spec.table}")
        return [row["external_id"] for row in rows]

    async def _insert_chunk(self, chunk: Sequence[RecordT]) -> int:
        params: list[Any] = []
        for record in chunk:
            params.extend(self.spec.row_values(record))

        pool = await self.database.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(render_insert_sql(self.spec, len(chunk)), *params)
        return len(rows)
