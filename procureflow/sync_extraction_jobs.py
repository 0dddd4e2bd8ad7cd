from __future__ import annotations

import argparse

from procureflow.db import SessionLocal
from procureflow.logging_setup import configure_logging
from procureflow.services.document_lifecycle_service import expire_stale_extractions, sync_extraction_jobs
from procureflow.services.provider_factory import get_extraction_service


def run(*, limit: int, expire: bool) -> tuple[dict[str, int], int]:
    with SessionLocal() as db:
        counts = sync_extraction_jobs(db, extraction_service=get_extraction_service(), limit=limit)
        expired = 0
        if expire:
            expired = len(expire_stale_extractions(db))
            db.commit()
    return counts, expired


def main() -> None:
    parser = argparse.ArgumentParser(description='Fetch results for in-flight extraction jobs.')
    parser.add_argument('--limit', type=int, default=100, help='Maximum number of documents to check.')
    parser.add_argument(
        '--no-expire',
        action='store_true',
        help='Do not fail documents that have waited longer than the extraction deadline.',
    )
    args = parser.parse_args()

    configure_logging()
    counts, expired = run(limit=args.limit, expire=not args.no_expire)
    print(
        'Extraction sync complete: '
        f"completed={counts['completed']}, failed={counts['failed']}, pending={counts['pending']}, "
        f"errors={counts['errors']}, expired={expired}"
    )


if __name__ == '__main__':
    main()
