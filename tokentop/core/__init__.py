"""
Core modules for tokentop.

This package contains pricing, session aggregation, activity rate
estimation, and the dashboard service that ties them to the store.
"""
