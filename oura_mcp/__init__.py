"""oura-mcp - Keeps a local process authenticated against the Oura Cloud API."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("oura-mcp")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    "OAuthSettings",
    "load_settings",
    "OAuthManager",
]


# Lazy imports keep `import oura_mcp` cheap
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("OAuthSettings", "load_settings"):
        from .config import OAuthSettings, load_settings
        return {"OAuthSettings": OAuthSettings, "load_settings": load_settings}[name]
    elif name == "OAuthManager":
        from .oauth import OAuthManager
        return OAuthManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
