from .server import create_app
from .metrics import ProxyMetrics
from .model_registry import ModelRegistry
from .uploads import DifyImageUploader

__all__ = [
    "create_app",
    "ProxyMetrics",
    "ModelRegistry",
    "DifyImageUploader",
]
