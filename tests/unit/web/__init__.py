"""Unit tests for the Codified HTTP API."""
