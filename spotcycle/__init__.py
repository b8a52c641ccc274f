"""spotcycle -- Pause and resume spot Kubernetes workloads without losing state."""

from spotcycle.exceptions import SpotCycleError
from spotcycle.lifecycle import Orchestrator
from spotcycle.pricing import compute_bid, rank_server_classes, score_server_class
from spotcycle.session import Session

__all__ = ["Orchestrator", "Session", "SpotCycleError", "compute_bid", "rank_server_classes", "score_server_class"]
