"""Exchange market data ingestion, aggregation and fan-out for :mod:`crypto_aggregator`."""
