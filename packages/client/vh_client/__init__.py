"""
Volunteer Hub client sync layer.

Tracks the authenticated session and keeps cached event and registration
queries consistent with the backend through realtime change notifications.
"""

__version__ = "0.1.0"
