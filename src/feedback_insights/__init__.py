"""
Feedback Insights: analytics over survey responses kept in Google Sheets.

- core: sheet transport, name reconciliation, column classification,
  filtering/aggregation, merge overlays and the cache-backed service
- cli: command line entry point
"""

__version__ = "0.1.0"
