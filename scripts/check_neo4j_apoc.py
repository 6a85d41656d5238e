#!/usr/bin/env python3
"""Check that Neo4j is reachable and report whether APOC is installed.

Graph builds work either way; without APOC the builder merges entity
properties client-side.

Usage:
    python scripts/check_neo4j_apoc.py [--config config/config.yaml] [--create-schema]

Environment variables:
    NEO4J_URI - Neo4j connection URI (default: bolt://localhost:7687)
    NEO4J_USER - Neo4j username (default: neo4j)
    NEO4J_PASSWORD - Neo4j password
"""

import argparse
import sys

from loguru import logger

from safetykg.errors import GraphBackendError
from safetykg.storage.neo4j_manager import Neo4jManager
from safetykg.utils.config import load_config


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Check Neo4j connectivity and APOC availability.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", default="config/config.yaml", help="Path to config file.")
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Also create the Entity id constraint and name/type indexes.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    config = load_config(args.config)

    manager = Neo4jManager(config.database)
    try:
        manager.connect()
        if args.create_schema:
            manager.create_schema()
        apoc = manager.check_apoc()
    except GraphBackendError as e:
        logger.error(f"{e.message} (category={e.category.value})")
        return 1
    finally:
        manager.close()

    if apoc:
        logger.success("APOC is available; entity upserts will merge properties server-side")
    else:
        logger.warning("APOC is not installed; entity upserts will use the fallback strategy")
    return 0


if __name__ == "__main__":
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level="INFO",
    )
    sys.exit(main())
