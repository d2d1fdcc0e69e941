"""Project data library: merge engine, maintenance operations and read models."""
