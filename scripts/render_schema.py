#!/usr/bin/env python3
"""Emit the release-cache DDL for provisioning a database by hand."""

from __future__ import annotations

import argparse

from timeboxd.services.repository import DROP_SQL, SCHEMA_SQL


def render_sql(*, drop: bool) -> str:
    header = "-- timeboxd release cache schema\n-- Run this in a privileged Postgres session.\n"
    body = SCHEMA_SQL.strip() + "\n"
    if drop:
        return header + "\n" + DROP_SQL.strip() + "\n\n" + body
    return header + "\n" + body


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL for the timeboxd cache tables.")
    parser.add_argument(
        "--drop",
        action="store_true",
        help="Prefix drop statements so the cache is rebuilt from scratch",
    )
    args = parser.parse_args()
    print(render_sql(drop=args.drop))


if __name__ == "__main__":
    main()
