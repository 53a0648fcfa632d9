"""A SOCKS5 proxy server built on asyncio."""

__version__ = "0.1.4"
__all__ = ["cli", "protocol", "server"]