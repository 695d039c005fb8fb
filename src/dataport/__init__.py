"""dataport -- tabular dataset import, sync and aggregation engine."""

__version__ = "0.4.0"
