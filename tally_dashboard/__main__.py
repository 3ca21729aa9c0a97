"""
Main entry point for running tally_dashboard as a module.

Usage:
    python -m tally_dashboard <command> [options]
"""
import sys
from .cli import main

if __name__ == "__main__":
    sys.exit(main())
