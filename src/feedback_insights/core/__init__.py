"""
Core data and analytics layer.

This package contains:
- sheets: fetch a sheet (Sheets API or CSV export) into a DataFrame
- names / grouping: normalize faculty names and group spelling variants
- columns: classify columns into rating questions and filter facets
- aggregation: filtering and the aggregate analytics record
- report: per-faculty question averages and remarks with a summary row
- overlay: per-account merge overlays and their JSON store
- cache: TTL cache with request coalescing and background refresh
- service: the operations exposed to callers, wiring the above together
"""
