"""
Rental Tracker - per-profile rental listing aggregator.

Fetches listings from Swiss real-estate sources, merges them into a durable
tracker with the user's follow-up state, and ranks them by budget, size and
commute time.
"""

__version__ = "0.1.0"
