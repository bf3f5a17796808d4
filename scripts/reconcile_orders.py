"""
Run one reconciliation pass over unfinished orders that carry a transaction hash.
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from marketplace.reconcile import main


if __name__ == "__main__":
    raise SystemExit(main())
