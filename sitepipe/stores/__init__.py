"""In-memory stores shared by build pipelines."""

from .asset_cache import AssetCache, BundleLedger, CacheEntry

__all__ = ["AssetCache", "BundleLedger", "CacheEntry"]
