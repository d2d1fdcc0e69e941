"""Error taxonomy shared by the extraction and library services."""

from __future__ import annotations


class CodifiedError(Exception):
    """Base class for domain errors."""


class NotFoundError(CodifiedError):
    """Referenced record does not exist."""

    def __init__(self, resource: str, resource_id: object):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class PreconditionError(CodifiedError):
    """Operation cannot run against the current state (e.g. no project to merge into)."""
