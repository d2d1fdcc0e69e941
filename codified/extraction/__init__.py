"""Codified extractions: item store, derived stats and the confirmation workflow."""
