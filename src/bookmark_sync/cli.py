"""Command-line view of the bookmark list: list, add, delete, and watch live changes."""
import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from uuid import UUID

from bookmark_sync.config import ClientSettings
from bookmark_sync.errors import BookmarkSyncError, SubscriptionError
from bookmark_sync.reconciler import BookmarkReconciler
from bookmark_sync.store import ApiBookmarkStore, BookmarkStore
from schemas.bookmark import BookmarkResponse as Bookmark

logger = logging.getLogger(__name__)


def format_bookmark(bookmark: Bookmark) -> str:
    """One line per bookmark: date, title, url, id."""
    return (
        f"{bookmark.created_at:%Y-%m-%d}  {bookmark.title}  "
        f"<{bookmark.url}>  [{bookmark.id}]"
    )


def render(records: list[Bookmark], out=sys.stdout) -> None:
    """Print the whole list, newest first."""
    print(f"Your Bookmarks ({len(records)})", file=out)
    if not records:
        print("  No bookmarks yet", file=out)
    for bookmark in records:
        print(f"  {format_bookmark(bookmark)}", file=out)
    out.flush()


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the bookmarks-sync command."""
    parser = argparse.ArgumentParser(
        prog="bookmarks-sync",
        description="Manage your bookmarks and follow changes made in other clients.",
    )
    parser.add_argument("--api-url", help="Bookmarks API base URL (default: BOOKMARKS_API_URL)")
    parser.add_argument("--token", help="Auth0 access token (default: BOOKMARKS_API_TOKEN)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("list", help="Print all bookmarks")

    add = commands.add_parser("add", help="Add a bookmark")
    add.add_argument("url")
    add.add_argument("title")

    delete = commands.add_parser("delete", help="Delete a bookmark")
    delete.add_argument("bookmark_id", type=UUID)
    delete.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    commands.add_parser("watch", help="Print the list every time it changes, until interrupted")
    return parser


def _ask(question: str) -> bool:
    answer = input(f"{question} [y/N] ")
    return answer.strip().lower() in {"y", "yes"}


async def _watch(store: BookmarkStore, owner_id: UUID) -> int:
    dropped = asyncio.Event()
    errors: list[SubscriptionError] = []

    def on_error(error: SubscriptionError) -> None:
        errors.append(error)
        dropped.set()

    async with BookmarkReconciler(
        store, on_change=render, on_subscription_error=on_error,
    ) as reconciler:
        await reconciler.start(owner_id)
        await dropped.wait()

    print(f"Change feed dropped: {errors[0]}", file=sys.stderr)
    return 1


async def run(args: argparse.Namespace, settings: ClientSettings) -> int:
    """Run one command. Returns the process exit code."""
    async with ApiBookmarkStore.from_settings(settings) as store:
        owner_id = await store.current_owner_id()
        if owner_id is None:
            print("Not signed in: set BOOKMARKS_API_TOKEN or pass --token", file=sys.stderr)
            return 2

        if args.command == "watch":
            return await _watch(store, owner_id)

        async with BookmarkReconciler(store) as reconciler:
            await reconciler.initialize(owner_id)

            if args.command == "list":
                render(reconciler.records)
            elif args.command == "add":
                bookmark = await reconciler.request_insert(args.url, args.title)
                print(f"Added {format_bookmark(bookmark)}")
            elif args.command == "delete":
                target = next(
                    (b for b in reconciler.records if b.id == args.bookmark_id), None,
                )
                label = target.title if target is not None else str(args.bookmark_id)
                sent = await reconciler.request_delete(
                    args.bookmark_id,
                    confirm=lambda: args.yes or _ask(f"Delete '{label}'?"),
                )
                print("Deleted" if sent else "Cancelled")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the bookmarks-sync command."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    overrides = {}
    if args.api_url:
        overrides["api_url"] = args.api_url
    if args.token:
        overrides["api_token"] = args.token
    settings = ClientSettings(**overrides)

    try:
        return asyncio.run(run(args, settings))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except BookmarkSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
