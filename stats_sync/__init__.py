"""VentureOS stats sync: incremental aggregation into the DynamoDB read store."""

__version__ = "0.1.0"
