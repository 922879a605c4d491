from platform_adapter.adapter import (
    PermanentPlatformError,
    PlatformAdapter,
    PlatformError,
    TransientPlatformError,
)

__all__ = ["PermanentPlatformError", "PlatformAdapter", "PlatformError", "TransientPlatformError"]
