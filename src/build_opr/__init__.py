"""Revision-tracking build reconciliation for range topologies."""
