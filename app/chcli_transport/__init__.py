"""
ClickHouse command-line transport.

Runs a statement by launching the external ``clickhouse client`` tool,
locally or inside a container, instead of speaking the native protocol.
"""

__version__ = "0.1.0"
