"""
Main entry point for running the package as a module.

Usage:
    python -m depot init-db
    python -m depot worker
    python -m depot status RESOURCE_ID
"""

import sys
from .cli import main

if __name__ == '__main__':
    sys.exit(main())
