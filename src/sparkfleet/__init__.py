"""sparkfleet: drive multi-node DGX Spark fleets over SSH."""

__version__ = "0.1.0"
