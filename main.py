#!/usr/bin/env python3
"""
Main entry point for the effective delta feed.

Runs the live feed from a source checkout without installing the package.

Usage:
    python main.py --config config/config.yaml
    python main.py --symbol SPY --mode poll
    python main.py --config config/config.yaml --log-level DEBUG
"""

import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from feeds.runner import main_cli


if __name__ == '__main__':
    main_cli()
