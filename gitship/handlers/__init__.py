import gitship.handlers.gitshipapp as gitshipapp
import gitship.handlers.probes as probes

__all__ = ["gitshipapp", "probes"]
