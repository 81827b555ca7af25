"""Parts of a caching, forwarding DNS proxy: response cache, DNS64, ECS helpers,
load-balanced upstream exchange, request context and configuration checks."""

__version__ = "0.1.0"