"""
Data models and API schemas
"""
