#!/usr/bin/env python3
"""Embed notes and conversation summaries that are missing vectors.

Notes are stored even when embedding fails; this script finds rows whose
``embedded_at`` is NULL and retries them.

Usage examples:
    # Everything, in batches of 100
    uv run python scripts/backfill.py

    # One user, up to 500 rows of each kind
    uv run python scripts/backfill.py --owner user_123 --limit 500
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from memoria.config import settings
from memoria.retrieval.pipeline import RetrievalPipeline

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Backfill missing Memoria embeddings")
    parser.add_argument("--owner", help="Only backfill this owner's rows")
    parser.add_argument(
        "--limit", "-n", type=int, default=100, help="Max rows of each kind (default: 100)"
    )
    args = parser.parse_args()

    report = asyncio.run(RetrievalPipeline.get().backfill(owner_id=args.owner, limit=args.limit))
    print(
        f"Embedded {report.notes} notes and {report.conversations} conversations "
        f"({report.failed} failed)"
    )
    if report.failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
