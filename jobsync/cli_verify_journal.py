from __future__ import annotations

import argparse
from pathlib import Path

import orjson

from .journal import verify_chain


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Verify a sync journal hash chain")
    parser.add_argument("--session", required=True, help="Session id, or a directory holding journal.jsonl")
    args = parser.parse_args(argv)

    target = Path(args.session)
    if target.is_dir():
        journal = target / "journal.jsonl"
    else:
        from .settings import settings
        journal = settings.journal_dir_for(args.session) / "journal.jsonl"
    if not journal.exists():
        print(orjson.dumps({"valid": False, "error": "journal.jsonl not found", "path": str(journal)}).decode())
        return 2
    result = verify_chain(journal)
    print(orjson.dumps(result, option=orjson.OPT_SORT_KEYS).decode())
    return 0 if result.get("valid") else 1


if __name__ == "__main__":
    raise SystemExit(main())
