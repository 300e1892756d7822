"""
Reward pipeline services.
"""
