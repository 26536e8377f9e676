#!/usr/bin/env python3
"""Emit SQL that registers a worker module's API key for machine auth."""

from __future__ import annotations

import argparse
import hashlib

DEFAULT_SCOPES = ("change_feed:consume", "referrals:read", "referrals:write")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, module_id: str, api_key: str, scopes: list[str], disable_existing: bool) -> str:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    module_value = _quote_sql(module_id)
    scopes_value = "array[" + ", ".join(_quote_sql(scope) for scope in scopes) + "]::text[]"

    statements = [
        "-- Worker module credential registration",
        "-- Run against the service database; only the SHA-256 hash of the key is stored.",
        "",
    ]
    if disable_existing:
        statements += [
            "update service_modules",
            "set enabled = false",
            f"where module_id = {module_value};",
            "",
        ]
    statements += [
        "insert into service_modules (module_id, scopes, key_hash, enabled)",
        f"values ({module_value}, {scopes_value}, {_quote_sql(key_hash)}, true)",
        "on conflict (module_id, key_hash) do update",
        "set scopes = excluded.scopes, enabled = true;",
        "",
    ]
    return "\n".join(statements)


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to register a worker module credential.")
    parser.add_argument("--module-id", required=True, help="Value the worker sends as X-Module-Id")
    parser.add_argument("--api-key", required=True, help="Value the worker sends as X-API-Key")
    parser.add_argument(
        "--scope",
        action="append",
        dest="scopes",
        help="Scope to grant; repeat for several (default: change feed and referral scopes)",
    )
    parser.add_argument(
        "--rotate",
        action="store_true",
        help="Disable the module's existing keys before adding this one",
    )
    args = parser.parse_args()

    print(
        render_sql(
            module_id=args.module_id,
            api_key=args.api_key,
            scopes=args.scopes or list(DEFAULT_SCOPES),
            disable_existing=args.rotate,
        )
    )


if __name__ == "__main__":
    main()
