#!/usr/bin/env python3
"""
Copy episodes kept in the local cache into a user's remote store.

Usage:
  python scripts/migrate_local_cache.py --story-bible-id sb-1 --user-id u-1 --dry-run
  python scripts/migrate_local_cache.py --story-bible-id sb-1 --user-id u-1 --clear-after-migration
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

# ensure backend root is on sys.path so bare imports work
BACKEND_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BACKEND_ROOT))

from models import is_draft_document  # noqa: E402
from storage.local_cache import LocalCacheStore  # noqa: E402
from storage.remote import HttpDocumentStore, RemoteStore, SqliteDocumentStore  # noqa: E402
from storage.repository import DualStoreRepository  # noqa: E402


def build_repository(data_dir: Path, user_id: str, remote_url: Optional[str] = None) -> DualStoreRepository:
    local = LocalCacheStore(str(data_dir / "local_cache.db"))
    if remote_url:
        documents = HttpDocumentStore(remote_url)
    else:
        documents = SqliteDocumentStore(str(data_dir / "remote_store.db"))
    return DualStoreRepository(local, RemoteStore(documents), user_id)


async def run(args) -> int:
    data_dir = Path(args.data_dir).expanduser().resolve()
    repository = build_repository(data_dir, args.user_id, args.remote_url)

    local_episodes = await repository.read_local_episodes(args.story_bible_id)
    remote_episodes = await repository.read_remote_episodes(args.story_bible_id)
    print(f"Local episodes:  {sorted(local_episodes)}")
    print(f"Remote episodes: {sorted(remote_episodes)}")

    finals = {number for number, payload in local_episodes.items() if not is_draft_document(payload)}
    drafts = sorted(set(local_episodes) - finals)
    if drafts:
        print(f"Skipping drafts: {drafts}")
    pending = sorted(finals - set(remote_episodes)) if not args.no_skip_duplicates else sorted(finals)
    if args.dry_run:
        print(f"Would migrate: {pending}")
        print("Run without --dry-run to copy them.")
        await repository.remote.documents.close()
        return 0

    result = await repository.migrate_local_to_remote(
        args.story_bible_id,
        skip_duplicates=not args.no_skip_duplicates,
        clear_after_migration=args.clear_after_migration,
    )
    await repository.remote.documents.close()
    print("=" * 60)
    print(f"Migrated {result.migrated}, skipped {result.skipped}, errors {result.errors}.")
    return 1 if result.errors else 0


def main():
    parser = argparse.ArgumentParser(description="Migrate local-cache episodes to the remote store")
    parser.add_argument("--story-bible-id", required=True)
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--data-dir", default=str(BACKEND_ROOT / ".." / "data"))
    parser.add_argument("--remote-url", default=None, help="REST document store; sqlite under --data-dir if omitted")
    parser.add_argument("--no-skip-duplicates", action="store_true", help="Overwrite episodes already stored remotely")
    parser.add_argument("--clear-after-migration", action="store_true")
    parser.add_argument("--dry-run", action="store_true", help="Preview only, don't write")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
