"""
Core modules for the billing collector.

This package contains source matching, key encoding, usage aggregation,
provider adapters and the billing run pipeline.
"""
