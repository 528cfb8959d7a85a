"""
Entry point for running the donor sync service as a module.

Usage:
    python -m services.donor_sync <command> [args]
"""

import sys

from .main import main

if __name__ == "__main__":
    sys.exit(main())
