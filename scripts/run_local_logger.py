#!/usr/bin/env python3
"""
Local Play Logger Runner

Runs one logging pass from your machine with the project's .env loaded.
Designed to be run manually or from cron.

Usage:
    python scripts/run_local_logger.py                # Log up to 20 recent plays
    python scripts/run_local_logger.py --limit=50     # Fetch more
    python scripts/run_local_logger.py --dry-run -v   # Preview, no writes
"""

import sys
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent

env_path = PROJECT_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)
    print(f"✅ Loaded credentials from {env_path}")
else:
    print(f"⚠️  No .env file found at {env_path}")
    print("   Using environment variables if set")

from playlog.cli import main  # noqa: E402

if __name__ == "__main__":
    print(f"Starting play logger at {datetime.now()}")
    print("=" * 60)
    code = main(["run"] + sys.argv[1:])
    print("=" * 60)
    print(f"{'Completed' if code == 0 else 'Failed'} at {datetime.now()} (exit code {code})")
    sys.exit(code)
