"""Create the indexer tables in the configured datastore and list what exists.

Usage:
    prediction-indexer-setup-db [--config config.yaml]
"""

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from prediction_indexer.config import load_indexer_config, load_yaml_config
from prediction_indexer.persistence.db import create_db_engine, create_tables


def setup_database(database_url: str) -> list[str]:
    """Create missing tables and return every table name now present."""
    engine = create_db_engine(database_url)
    try:
        create_tables(engine)
        return sorted(inspect(engine).get_table_names())
    finally:
        engine.dispose()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Create prediction-indexer tables")
    parser.add_argument("--config", default="config.yaml", help="YAML config path (default: config.yaml)")
    args = parser.parse_args(argv)

    load_dotenv()
    cfg = load_indexer_config(load_yaml_config(Path(args.config)), validate=False)
    if not cfg.database_url:
        print("DATABASE_URL is not set", file=sys.stderr)
        sys.exit(1)

    try:
        tables = setup_database(cfg.database_url)
    except SQLAlchemyError as e:
        print(f"Database setup failed: {e}", file=sys.stderr)
        sys.exit(1)

    print("Tables:")
    for name in tables:
        print(f"  ✓ {name}")


if __name__ == "__main__":
    main()
