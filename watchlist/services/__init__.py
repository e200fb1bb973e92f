"""Refresh, rate governance and range batch services.

Submodules are imported directly (e.g. `watchlist.services.refresh_engine`);
the provider registry depends on the cache and governor defined here.
"""
