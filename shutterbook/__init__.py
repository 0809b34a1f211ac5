"""
Shutterbook Notifications — real-time notification delivery for the
Shutterbook photographer booking marketplace.
"""

__version__ = "1.0.0"
