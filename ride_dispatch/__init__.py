"""
Ride Dispatch: движок назначения водителей на поездки.
"""

__version__ = "1.0.0"
