#!/usr/bin/env python3
"""Emit the Postgres DDL for opportunity tables, the job queue and the combined view."""

from __future__ import annotations

import argparse

from sourcing_worker.repositories.postgres import TABLE_SPECS, TableSpec

VIEW_COLUMNS = (
    "external_id",
    "source",
    "label",
    "address",
    "city",
    "zip_code",
    "department",
    "latitude",
    "longitude",
    "opportunity_date",
    "main_picture",
)


def render_table(spec: TableSpec) -> str:
    lines = ["  id bigint generated always as identity primary key"]
    for column in spec.columns:
        suffix = " not null" if not column.nullable else ""
        if column.name == "external_id":
            suffix += " unique"
        lines.append(f"  {column.name} {column.sql_type}{suffix}")
    lines.append("  created_at timestamptz not null default now()")
    body = ",\n".join(lines)
    return f"""create table if not exists {spec.table} (
{body}
);
create index if not exists {spec.table}_department_idx on {spec.table} (department);
create index if not exists {spec.table}_opportunity_date_idx on {spec.table} (opportunity_date);
"""


def render_queue_table() -> str:
    return """create table if not exists queue_jobs (
  queue text not null,
  id text not null,
  name text not null,
  data jsonb not null default '{}'::jsonb,
  state text not null default 'waiting'
    check (state in ('waiting', 'delayed', 'active', 'completed', 'failed')),
  attempts_made integer not null default 0,
  max_attempts integer not null default 3,
  run_at timestamptz not null default now(),
  last_error text,
  lease_expires_at timestamptz,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now(),
  primary key (queue, id)
);
create index if not exists queue_jobs_due_idx on queue_jobs (queue, state, run_at);
create index if not exists queue_jobs_lease_idx on queue_jobs (queue, lease_expires_at) where state = 'active';
"""


def render_scraped_files_table() -> str:
    return """create table if not exists scraped_files (
  source text not null,
  file_name text not null,
  scraped_at timestamptz not null default now(),
  primary key (source, file_name)
);
"""


def render_view(view_name: str, specs: tuple[TableSpec, ...] = TABLE_SPECS) -> str:
    columns = ", ".join(VIEW_COLUMNS)
    selects = "\nunion all\n".join(
        f"select '{spec.table}'::text as type, {columns} from {spec.table}" for spec in specs
    )
    return f"""drop materialized view if exists {view_name};
create materialized view {view_name} as
{selects};
create unique index if not exists {view_name}_type_external_id_idx on {view_name} (type, external_id);
create index if not exists {view_name}_department_idx on {view_name} (department);
"""


def render_schema(*, view_name: str = "all_opportunities", include_queue: bool = True) -> str:
    parts = ["-- Opportunity sourcing schema", ""]
    parts.extend(render_table(spec) for spec in TABLE_SPECS)
    parts.append(render_scraped_files_table())
    if include_queue:
        parts.append(render_queue_table())
    parts.append(render_view(view_name))
    return "\n".join(parts)


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL for the opportunity sourcing database schema.")
    parser.add_argument(
        "--view-name",
        default="all_opportunities",
        help="Name of the materialized view unioning every opportunity table",
    )
    parser.add_argument(
        "--without-queue",
        action="store_true",
        help="Skip the queue_jobs table (when jobs live in another database)",
    )
    args = parser.parse_args()

    print(render_schema(view_name=args.view_name, include_queue=not args.without_queue))


if __name__ == "__main__":
    main()
