"""
Upstream forwarding for AI Cost Proxy.
"""

from .forwarder import ProviderCredentials, ProxyForwarder, UpstreamResponse

__all__ = ["ProviderCredentials", "ProxyForwarder", "UpstreamResponse"]
