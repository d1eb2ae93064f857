"""Ephemeral EC2 benchmark fleet orchestration for DataFusion on ClickBench."""

__version__ = "0.1.0"
