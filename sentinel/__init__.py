"""
WorkLog Sentinel

Security observability and session-integrity subsystem for the WorkLog
time-tracking application.
"""

__version__ = "1.0.0"
