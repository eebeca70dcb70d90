"""
WorkLog Sentinel - Utilities
"""
