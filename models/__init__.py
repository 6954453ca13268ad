"""
Data models module for msgdrive.

This module contains SQLAlchemy ORM models for:
- Directories
- Files
- Sync state
"""
