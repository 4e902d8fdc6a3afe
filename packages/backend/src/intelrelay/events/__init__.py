"""Append-only delivery event log."""
