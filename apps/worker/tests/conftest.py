"""Pytest configuration for worker tests."""

import os
import sys
from pathlib import Path

APPS_DIR = Path(__file__).resolve().parents[2]

# Inject sys.path for reliable pytest imports
sys.path.insert(0, str(APPS_DIR / "api"))  # => mpw_api
sys.path.insert(0, str(APPS_DIR / "worker"))  # => mpw_worker
sys.path.insert(0, str(APPS_DIR / "api" / "tests"))  # => fakes

# Keep pytest's log capture handlers on the root logger
os.environ.setdefault("MPW_JSON_LOGS", "false")
