"""
Core modules for Atlas AI.

This package contains query interpretation, token metering, result
caching and the retrieval pipeline.
"""
