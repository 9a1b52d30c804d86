"""
Chunked directory replication: splits large trees into copy units and runs
them concurrently through an external copy tool.
"""

__version__ = "0.1.0"
