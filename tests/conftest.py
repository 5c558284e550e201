"""Shared pytest configuration — adds project root to sys.path."""
import sys
from pathlib import Path

# Модули лежат в корне проекта (irv.py, db.py, ...), без пакета.
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
