"""
Background jobs

- expiration_sweeper.py: batch expiration of vouchers whose validity window closed
- scheduler.py: APScheduler wiring that runs the sweep on an interval
"""
