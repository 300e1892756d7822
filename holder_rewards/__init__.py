"""
Holder rewards engine: harvests token transfer tax, converts it to SOL and
distributes it pro rata to eligible holders every cycle.
"""

__version__ = "0.1.0"
