"""
Core modules for ccost.

This package contains the ingestion pipeline: log discovery, parsing,
pricing and the driver that ties them to the usage cache.
"""
