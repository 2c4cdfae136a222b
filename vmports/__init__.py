"""vm-ports package."""

__all__ = [
    "backend",
    "cli",
    "collisions",
    "config",
    "constants",
    "exceptions",
    "leases",
    "lock",
    "models",
    "network",
    "prober",
    "utils",
]
