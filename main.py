#!/usr/bin/env python

"""
daytrack - Main Entry Point

Linear-synced time tracker: start/stop a timer on your issues, entries are
split at local midnight, mirrored to a spreadsheet and summarised on Slack.

Usage:
    python main.py --help
    python main.py start <task-id>
    python main.py run
"""

import os
import sys
from pathlib import Path

# The tick loop uses QtCore only, no display needed
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from daytrack.cli import main


if __name__ == "__main__":
    sys.exit(main())
