"""State layer.

This package is the single source of truth for which beacons each agent
currently has in range.  Only the classifier writes to it; the arbiter
reads from it.
"""
