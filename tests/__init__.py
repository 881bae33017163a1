"""
Jobstore Test Suite.

This package contains:
- unit/: Unit tests per module (temporary SQLite files only)
- integration/: DownloadProvider end to end against a real SQLite database
"""
