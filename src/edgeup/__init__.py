"""Version and plugin manager for the WasmEdge runtime."""

__version__ = "0.1.0"
