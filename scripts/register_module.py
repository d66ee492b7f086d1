#!/usr/bin/env python3
"""Emit deterministic SQL that registers a machine module and its API key."""

from __future__ import annotations

import argparse
import hashlib

DEFAULT_SCOPES = ("crawl:read", "crawl:write", "facts:write")
KNOWN_SCOPES = ("crawl:read", "crawl:write", "crawl:admin", "facts:write")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def render_sql(*, module_id: str, api_key: str, scopes: list[str]) -> str:
    module_value = _quote_sql(module_id)
    scopes_value = "array[" + ", ".join(_quote_sql(scope) for scope in scopes) + "]::text[]"
    key_hash_value = _quote_sql(hash_api_key(api_key))

    return f"""-- Machine module registration SQL
-- Run against the crawl ingest database (psql or equivalent).

insert into modules (module_id, enabled, scopes)
values ({module_value}, true, {scopes_value})
on conflict (module_id) do update set enabled = true, scopes = excluded.scopes;

insert into module_credentials (module_id, key_hash, is_active)
select id, {key_hash_value}, true
from modules
where module_id = {module_value};
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to register a machine module credential.")
    parser.add_argument("--module-id", required=True, help="Value clients send in X-Module-Id")
    parser.add_argument("--api-key", required=True, help="Plain API key; only its sha256 hash is emitted")
    parser.add_argument(
        "--scope",
        action="append",
        choices=KNOWN_SCOPES,
        dest="scopes",
        help="Scope to grant; repeat for several (default: crawl:read, crawl:write, facts:write)",
    )
    args = parser.parse_args()

    print(
        render_sql(
            module_id=args.module_id,
            api_key=args.api_key,
            scopes=args.scopes or list(DEFAULT_SCOPES),
        )
    )


if __name__ == "__main__":
    main()
