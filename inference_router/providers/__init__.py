from inference_router.providers.base import ProviderAdapter
from inference_router.providers.factory import build_adapter, build_adapters
from inference_router.providers.mock_provider import MockProvider

__all__ = [
    "ProviderAdapter",
    "MockProvider",
    "build_adapter",
    "build_adapters",
]
