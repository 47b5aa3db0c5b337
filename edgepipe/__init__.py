"""Function pipelines for edge application services: decoding, topic routing, store-and-forward retry and authenticated encryption."""

__version__ = "0.1.0"