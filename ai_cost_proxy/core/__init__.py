"""
Core modules for AI Cost Proxy.

This package contains pricing, cost estimation, access guarding and the
request admission pipeline.
"""
