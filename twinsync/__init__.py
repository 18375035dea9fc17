"""
Twinsync - rsync-based two-way directory reconciliation

Each pass:
- snapshots the primary tree and diffs it against the previous pass
- shields local changes from being overwritten by the pull
- pulls from the secondary, then mirrors the primary back
- keeps backups, history and a per-directory session lock
"""

__version__ = "0.1.0"

from twinsync.core.engine import SyncOrchestrator
from twinsync.config.models import Session, SessionOptions

__all__ = ["SyncOrchestrator", "Session", "SessionOptions", "__version__"]
