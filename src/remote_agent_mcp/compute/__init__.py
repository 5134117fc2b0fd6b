"""Remote compute backends for execution units."""

from .ecs import EcsComputeBackend
from .logs import CloudWatchLogSource
from .models import ComputeError, UnitHandle, UnitParameters

__all__ = [
    "CloudWatchLogSource",
    "ComputeError",
    "EcsComputeBackend",
    "UnitHandle",
    "UnitParameters",
]
