"""
WorkLog Sentinel - Pydantic Schemas
"""
