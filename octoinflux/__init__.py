"""Octopus Energy to InfluxDB ingestion package.

A daemon that authenticates with the Octopus Energy (Kraken) API, pulls
smart meter consumption and tariff data page by page, and writes it to
InfluxDB with the readings' own timestamps.
"""

__version__ = "0.1.0"
