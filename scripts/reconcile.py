#!/usr/bin/env python3
"""
State Reconciliation Tool

Compares a desired state (fixture file, reference database, provider catalog)
against an actual store and applies the corrective operations.

Usage:
    ./scripts/reconcile.py --config statesync.yaml plan --kinds session_type --from fixtures --to prod-db
    ./scripts/reconcile.py --config statesync.yaml reconcile --kinds session_type --from fixtures --to prod-db
    ./scripts/reconcile.py status
"""

import sys
from pathlib import Path

# Add the project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from statesync.cli import main

if __name__ == "__main__":
    sys.exit(main())
