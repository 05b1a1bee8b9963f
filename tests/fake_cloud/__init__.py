"""In-memory cloud for executor and runner tests.

Provides a provider implementation that keeps resources in memory, records
every call, and can be told to fail, stall or block specific operations.

Usage:
    from fake_cloud import FakeProvider

    cloud = FakeProvider()
    cloud.fail("db-proxy", "create", fatal=True)
    registry = ProviderRegistry.uniform(cloud)
"""

from .provider import FakeProvider, FakeResource

__all__ = [
    "FakeProvider",
    "FakeResource",
]
