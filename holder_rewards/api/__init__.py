"""
HTTP status API.
"""
