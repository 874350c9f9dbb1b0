"""Downstream vulnerability-management API client."""

from scanrelay.downstream.importer import DownstreamImporter, create_downstream_client

__all__ = ["DownstreamImporter", "create_downstream_client"]
