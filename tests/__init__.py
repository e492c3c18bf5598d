"""Test configuration and fixtures"""
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "true"
os.environ["LOG_FORMAT"] = "console"
os.environ["LOG_FILE_ENABLED"] = "false"
os.environ.pop("DATABASE_URL", None)
