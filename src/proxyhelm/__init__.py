"""proxyhelm - proxy core connection orchestration."""

__version__ = "0.1.0"
