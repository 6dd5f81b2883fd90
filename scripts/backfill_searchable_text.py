#!/usr/bin/env python3
"""Recompute the searchable text of every stored page.

Usage:
    python scripts/backfill_searchable_text.py [--database-url URL] [--index-block-fields]
"""

import argparse
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from notes_ai_server.notes import PageStore, StoreError
from notes_ai_server.server import MIGRATIONS_DIR


def main():
    parser = argparse.ArgumentParser(description="Backfill searchable text for existing pages")
    parser.add_argument("--database-url", default=None, help="Overrides DATABASE_URL env var")
    parser.add_argument(
        "--index-block-fields",
        action="store_true",
        help="Also index block types and string block properties",
    )
    args = parser.parse_args()

    try:
        with PageStore(args.database_url) as store:
            store.run_migrations(MIGRATIONS_DIR)
            count = store.backfill_searchable_text(include_block_fields=args.index_block_fields)
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Updated searchable text for {count} pages")


if __name__ == "__main__":
    main()
