"""
WorkLog Sentinel - Services
"""
