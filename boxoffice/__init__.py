"""
BoxOffice ticket reservation and booking-lifecycle engine
"""

__version__ = "1.0.0"
