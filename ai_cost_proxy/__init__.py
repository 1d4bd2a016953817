"""
AI Cost Proxy.

Metered reverse proxy in front of LLM provider APIs: estimates the cost of
each completion, debits a prepaid balance, and forwards the request upstream.
"""

__version__ = "0.1.0"
