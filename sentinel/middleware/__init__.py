"""
WorkLog Sentinel - Middleware
"""
