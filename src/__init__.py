"""
IPTV Stream Gateway
Entitlement-gated IPTV delivery core: session control, upstream
normalization, transcoder supervision and an Xtream-compatible catalog.
"""

__version__ = "0.3.0"
__description__ = "IPTV streaming sessions with entitlement-gated delivery"
