"""Pytest configuration for path setup.

Puts the repository root on ``sys.path`` so ``pricing_engine`` and ``app``
import without installing the package.
"""

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)
