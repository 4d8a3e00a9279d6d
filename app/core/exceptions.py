"""Errors raised by the recommendation engine.

Only conditions the caller has to act on are exceptions. Degraded modes
(missing embeddings, empty neighborhoods, deadlines) are reported through
the result status instead, see RecommendationStatus.
"""


class RecommenderError(Exception):
    """Base class for engine errors."""


class UnknownItemError(RecommenderError):
    """Requested item id is not in the catalog."""

    def __init__(self, item_id: int):
        self.item_id = item_id
        super().__init__(f"Item {item_id} not found in catalog")


class InvalidParameterError(RecommenderError, ValueError):
    """Request parameter outside configured bounds. Raised before any work starts."""

    def __init__(self, name: str, value, reason: str):
        self.name = name
        self.value = value
        super().__init__(f"Invalid {name}={value!r}: {reason}")


class GraphSnapshotError(RecommenderError):
    """The graph snapshot is missing or structurally corrupt."""
