from .gitshipapp import GitshipApp
from .build import BuildOrchestrator

__all__ = [
    "GitshipApp",
    "BuildOrchestrator",
]
