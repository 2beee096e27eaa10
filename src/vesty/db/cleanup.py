"""
Garbage-collect images left behind by swap attempts that never got a swap row.

Run periodically with ``python -m vesty.db.cleanup``.
"""

import argparse
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from sqlmodel import Session

from ..blob_storage import ObjectStore, get_object_store
from . import get_engine
from .models import utcnow
from .store import RecordStore

DEFAULT_GRACE_PERIOD = timedelta(hours=1)


@dataclass
class CleanupReport:
    deleted_images: int = 0
    deleted_objects: int = 0
    failed_keys: list[str] = field(default_factory=list)


def collect_orphaned_images(
    store: RecordStore,
    object_store: ObjectStore,
    grace_period: timedelta = DEFAULT_GRACE_PERIOD,
) -> CleanupReport:
    """
    Delete orphaned images older than ``grace_period``, objects first, then rows.

    Rows whose object could not be deleted are kept so a later run retries them.
    The grace period keeps in-flight swap attempts from being collected.
    """
    report = CleanupReport()
    orphans = store.find_orphaned_images(utcnow() - grace_period)
    logging.info(f"Found {len(orphans)} orphaned images")

    for image in orphans:
        if image.storage_key:
            if not object_store.delete(image.storage_key):
                report.failed_keys.append(image.storage_key)
                continue
            report.deleted_objects += 1
        store.delete_image(image.id)
        report.deleted_images += 1

    logging.info(
        f"Deleted {report.deleted_images} orphaned images "
        f"({report.deleted_objects} objects, {len(report.failed_keys)} failures)"
    )
    return report


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--grace-minutes",
        type=int,
        default=int(DEFAULT_GRACE_PERIOD.total_seconds() // 60),
        help="Only collect images older than this many minutes",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s.%(msecs)03d %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    object_store = get_object_store()
    try:
        with Session(get_engine()) as session:
            report = collect_orphaned_images(
                RecordStore(session),
                object_store,
                timedelta(minutes=args.grace_minutes),
            )
    finally:
        object_store.close()

    if report.failed_keys:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
