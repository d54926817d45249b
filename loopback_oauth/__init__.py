"""loopback-oauth - Desktop OAuth 2.0 sign-in with PKCE over a loopback redirect."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("loopback-oauth")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    "Settings",
    "load_settings",
    "get_base_url",
    "FlowLifecycleController",
    "TokenResult",
]

# Lazy imports keep `import loopback_oauth` free of asyncio/httpx setup
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("Settings", "load_settings", "get_base_url"):
        from .config import Settings, get_base_url, load_settings
        return {"Settings": Settings, "load_settings": load_settings, "get_base_url": get_base_url}[name]
    elif name == "FlowLifecycleController":
        from .oauth import FlowLifecycleController
        return FlowLifecycleController
    elif name == "TokenResult":
        from .oauth import TokenResult
        return TokenResult
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
