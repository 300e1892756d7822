"""
Cycle scheduling.
"""
