from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SCRIPT_PATH = ROOT / "scripts" / "render_schema.py"


def _run_script(*args: str) -> str:
    env = {**os.environ, "PYTHONPATH": str(ROOT)}
    completed = subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=True,
        capture_output=True,
        text=True,
        env=env,
    )
    return completed.stdout


def test_render_schema_emits_all_cache_tables() -> None:
    output = _run_script()

    assert "create table if not exists film_cache" in output
    assert "create table if not exists release_cache (" in output
    assert "create table if not exists release_cache_meta" in output
    assert "on release_cache (catalog_id, country, release_date, release_type)" in output
    assert "drop table" not in output


def test_render_schema_can_prefix_drop_statements() -> None:
    output = _run_script("--drop")

    assert output.index("drop table if exists release_cache_meta;") < output.index("create table if not exists film_cache")
