"""
Orphan blob sweep.

Deleting a material or matter never deletes blobs, since another matter or
template may share the id. This sweep is the explicit, optional cleanup: it
deletes every stored blob that no material in either collection references.
"""

import asyncio
import logging

from .editing import collect_file_ids
from .schemas import SweepReport

logger = logging.getLogger(__name__)


async def sweep_orphan_blobs(store, blobs, dry_run: bool = False) -> SweepReport:
    loop = asyncio.get_running_loop()
    matters, templates = await loop.run_in_executor(None, store.read_collections)
    referenced = collect_file_ids(matters, templates)
    stored = await blobs.keys()

    orphans = sorted(k for k in stored if k not in referenced)
    if orphans and not dry_run:
        await asyncio.gather(*(blobs.delete(k) for k in orphans))

    logger.info(
        f"Blob sweep: {len(referenced)} referenced, {len(stored)} stored, "
        f"{len(orphans)} orphans {'found' if dry_run else 'deleted'}"
    )
    return SweepReport(
        referenced=len(referenced),
        stored=len(stored),
        deleted=orphans,
        dry_run=dry_run,
    )
