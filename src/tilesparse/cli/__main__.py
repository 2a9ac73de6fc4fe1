"""
Main entry point for the tilesparse CLI when run as a module.

This allows running the CLI via:
    python -m tilesparse.cli
"""

import sys

from . import main

if __name__ == '__main__':
    sys.exit(main())
