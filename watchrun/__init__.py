"""Poll a set of paths and restart a command pipeline on every change.

This package provides a polling file watcher that turns snapshot
differences into batches of change records, and a process pipeline that
is killed and restarted for every batch.
"""

__version__ = "0.1.0"
