"""Entry point for running the bookmarks-sync command."""
import sys

from bookmark_sync.cli import main

if __name__ == "__main__":
    sys.exit(main())
