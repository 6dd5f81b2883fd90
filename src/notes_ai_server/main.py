"""Entry point for the notes AI server."""

import argparse
import os

import uvicorn


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Notes AI server")
    parser.add_argument(
        "--engine",
        choices=["lmstudio", "openai", "anthropic"],
        default=None,
        help="Inference engine for AI tasks. Overrides AI_ENGINE env var and saved settings.",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="PostgreSQL connection string. Overrides DATABASE_URL env var.",
    )
    parser.add_argument(
        "--diff-design",
        type=int,
        choices=[1, 2, 3],
        default=None,
        help="Correction diff style: 1 word-by-word, 2 word diff, 3 character diff. Overrides DIFF_DESIGN env var.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        default=None,
        help="Log level. Overrides LOG_LEVEL env var.",
    )
    parser.add_argument(
        "--reindex",
        action="store_true",
        help="Recompute the search text of every page, then exit without serving.",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=4000, help="Bind port (default: 4000)")
    return parser


def reindex() -> int:
    from notes_ai_server.logger import logger
    from notes_ai_server.notes.database import PageStore
    from notes_ai_server.server import MIGRATIONS_DIR

    with PageStore() as store:
        store.run_migrations(MIGRATIONS_DIR)
        count = store.backfill_searchable_text()
    logger.info("reindex finished", pages_count=count)
    return count


def main(argv: list[str] | None = None):
    args = build_parser().parse_args(argv)

    # Settings are read from the environment when the server modules load
    if args.engine:
        os.environ["AI_ENGINE"] = args.engine
    if args.database_url:
        os.environ["DATABASE_URL"] = args.database_url
    if args.diff_design:
        os.environ["DIFF_DESIGN"] = str(args.diff_design)
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level

    if args.reindex:
        reindex()
        return

    from notes_ai_server.server import app

    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
