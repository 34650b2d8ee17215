from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Sequence

from visionary.config import load_config
from visionary.core.gallery_state import GalleryManager, build_manager
from visionary.core.photos_library import PhotosLibrary
from visionary.core.scan import DirectorySource, PermissionDeniedError, classify_mime
from visionary.state.models import MediaItem


def _ask(message: str) -> bool:
    try:
        answer = input(f"{message} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _print_progress(current: int, total: int) -> None:
    print(f"\r[index] {current} of {total} items processed", end="" if current < total else "\n", flush=True)


def _manager(args: argparse.Namespace, *, progress: bool = False) -> GalleryManager:
    cfg = load_config(args.config)
    confirm = (lambda _message: True) if getattr(args, "yes", False) else _ask
    return build_manager(cfg, confirm=confirm, progress=_print_progress if progress else None)


def _print_items(items: List[MediaItem], limit: int | None = None) -> None:
    shown = items if limit is None else items[:limit]
    for item in shown:
        tags = ", ".join(item.metadata.tags[:6])
        suffix = f"  [{tags}]" if tags else ""
        print(f"{item.id}  {item.kind.value:<14} {item.name}{suffix}")
    if limit is not None and len(items) > limit:
        print(f"... {len(items) - limit} more")


def cmd_sync(args: argparse.Namespace) -> None:
    manager = _manager(args)
    if args.resync:
        added = manager.resync_directory()
    else:
        added = manager.sync_directory(DirectorySource(args.root))
    print(f"[sync] added={len(added)} total={len(manager.items)}")


def cmd_albums(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    manager = _manager(args)
    albums = manager.load_albums(PhotosLibrary(args.library or cfg.get("library_path")))
    for album in albums:
        print(f"{album.id}  {album.count:>6}  {album.name}")
    print(f"[albums] {len(albums)} albums")


def cmd_library(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    manager = _manager(args)
    added = manager.sync_library(
        PhotosLibrary(args.library or cfg.get("library_path")),
        args.album,
        load_more=args.load_more,
        page_size=args.page_size or int(cfg.get("page_size", 1000)),
    )
    print(f"[library] added={len(added)} total={len(manager.items)}")


def cmd_list(args: argparse.Namespace) -> None:
    manager = _manager(args)
    items = manager.unindexed() if args.unindexed else manager.items
    _print_items(items, args.limit)
    print(f"[list] {len(items)} items, {len(manager.unindexed())} unanalyzed")


def cmd_index(args: argparse.Namespace) -> None:
    manager = _manager(args, progress=True)
    pending = len(manager.unindexed())
    updated = manager.ensure_indexed()
    if updated is None:
        print("[index] indexing declined; no changes made")
        return
    remaining = len(manager.unindexed())
    print(f"[index] analyzed={pending - remaining} failed={remaining} total={len(updated)}")


def cmd_search(args: argparse.Namespace) -> None:
    manager = _manager(args, progress=True)
    results = manager.search_by_text(args.query, ai_enabled=args.ai)
    if results is None:
        print("[search] indexing declined; search skipped")
        return
    _print_items(results, args.limit)
    print(f"[search] {len(results)} matches")


def cmd_search_image(args: argparse.Namespace) -> None:
    manager = _manager(args, progress=True)
    manager.set_ai_mode(args.ai)
    path = Path(args.image)
    mime_type = classify_mime(path.name) or "image/jpeg"
    results = manager.search_by_image(path.read_bytes(), mime_type)
    if results is None:
        print("[search-image] declined; search skipped")
        return
    _print_items(results, args.limit)
    print(f"[search-image] {len(results)} matches")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Visionary Gallery CLI")
    parser.add_argument("--config", default=None, help="Path to config.yaml (defaults to $VISIONARY_CONFIG or ./config.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Import media from a local directory")
    group = sync_parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--root", help="Directory to walk")
    group.add_argument("--resync", action="store_true", help="Walk the previously granted directory again")
    sync_parser.set_defaults(func=cmd_sync)

    albums_parser = subparsers.add_parser("albums", help="List albums of the Photos library")
    albums_parser.add_argument("--library", help="Path to a .photoslibrary bundle")
    albums_parser.set_defaults(func=cmd_albums)

    library_parser = subparsers.add_parser("library", help="Load one page of the Photos library")
    library_parser.add_argument("--library", help="Path to a .photoslibrary bundle")
    library_parser.add_argument("--album", help="Album identifier to restrict the page to")
    library_parser.add_argument("--page-size", type=int, default=None, help="Items per page")
    library_parser.add_argument("--load-more", action="store_true", help="Append the next page instead of replacing")
    library_parser.set_defaults(func=cmd_library)

    list_parser = subparsers.add_parser("list", help="List gallery items")
    list_parser.add_argument("--unindexed", action="store_true", help="Only items not analyzed yet")
    list_parser.add_argument("--limit", type=int, default=None, help="Maximum rows to print")
    list_parser.set_defaults(func=cmd_list)

    index_parser = subparsers.add_parser("index", help="Analyze every unanalyzed item")
    index_parser.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt")
    index_parser.set_defaults(func=cmd_index)

    search_parser = subparsers.add_parser("search", help="Search by text")
    search_parser.add_argument("query", help="Free-text query")
    search_parser.add_argument("--ai", action="store_true", help="Use AI ranking instead of name matching")
    search_parser.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt")
    search_parser.add_argument("--limit", type=int, default=None, help="Maximum rows to print")
    search_parser.set_defaults(func=cmd_search)

    image_parser = subparsers.add_parser("search-image", help="Search by image similarity")
    image_parser.add_argument("image", help="Path to the example image")
    image_parser.add_argument("--ai", action="store_true", help="Start with AI mode already enabled")
    image_parser.add_argument("--yes", "-y", action="store_true", help="Skip confirmation prompts")
    image_parser.add_argument("--limit", type=int, default=None, help="Maximum rows to print")
    image_parser.set_defaults(func=cmd_search_image)

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        args.func(args)
    except PermissionDeniedError as exc:
        print(f"Permission denied: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":  # pragma: no cover
    main()
