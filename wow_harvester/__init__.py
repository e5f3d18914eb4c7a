"""wow-harvester: crawl and ingestion coordination for WoW character, guild and market data."""

__version__ = "0.1.0"
