"""CLI entry point for rovosession."""

import sys

from rovosession.cli import main

if __name__ == "__main__":
    sys.exit(main())
