"""
CLI - Index a local directory and search it.

Usage:
    share-index ~/Documents --query report --type file --ext .pdf
    share-index /srv/share --rebuild
"""

import argparse
import asyncio
import logging
from pathlib import Path

from .config import IndexConfig
from .listers import StaticShareRegistry
from .models import SearchOptions, ShareDescriptor, ShareType
from .registry import IndexRegistry


SHARE_ID = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Index a directory and search it by name")
    parser.add_argument("root", help="Directory to index (registered as share 1)")
    parser.add_argument("--query", "-q", help="Search query")
    parser.add_argument("--type", choices=["file", "directory"], help="Only this entry type")
    parser.add_argument("--ext", nargs="+", default=[], help="Only files with these extensions")
    parser.add_argument("--sort-by", default="relevance", choices=["relevance", "name", "size", "modified"])
    parser.add_argument("--order", default="desc", choices=["asc", "desc"])
    parser.add_argument("--limit", type=int, default=20, help="Max results")
    parser.add_argument("--index-dir", help="Where index artifacts are stored")
    parser.add_argument("--rebuild", action="store_true", help="Force a full rebuild")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    return parser


def main(argv=None):
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s"
    )

    config = IndexConfig.from_env()
    if args.index_dir:
        config.index_dir = Path(args.index_dir)
        config.__post_init__()
    # One-shot process: no background schedules
    config.enable_incremental_update = False
    config.auto_cleanup = False

    root = Path(args.root).expanduser().resolve()
    share = ShareDescriptor(id=SHARE_ID, name=root.name or str(root), type=ShareType.LOCAL, root=str(root))

    async def _main():
        registry = IndexRegistry(StaticShareRegistry([share]), config)
        await registry.init()

        try:
            if args.rebuild:
                await registry.rebuild_index(SHARE_ID, wait=True)
            else:
                await registry.get_index(SHARE_ID, wait=True)

            status = registry.get_status(SHARE_ID)
            print(f"\n{root}: {status.status.value}, {status.total_files} entries")
            if status.error:
                print(f"Error: {status.error}")

            if args.query:
                options = SearchOptions(
                    extensions=args.ext,
                    kind=args.type,
                    sort_by=args.sort_by,
                    sort_order=args.order,
                    limit=args.limit,
                )
                result = await registry.search(SHARE_ID, args.query, options)
                print(f"{result.total} matches ({result.elapsed_ms:.1f} ms)\n")
                for hit in result.results:
                    marker = "/" if not hit.entry.is_file else ""
                    print(f"  {hit.relevance:4d}  {hit.entry.path}{marker}")

        except KeyboardInterrupt:
            print("\nStopped.")
        finally:
            await registry.shutdown()

    asyncio.run(_main())


if __name__ == "__main__":
    main()
