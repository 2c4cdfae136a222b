"""Custom exceptions for VM-Ports."""

from __future__ import annotations


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ForwardPortCollision(ManagerError):
    """A requested host port is in use and may not be repaired."""

    def __init__(self, guest_port: int, host_port: int) -> None:
        self.guest_port = guest_port
        self.host_port = host_port
        super().__init__(
            f"Forwarded port to {guest_port} collides with host port {host_port}, which is already in use. "
            "Pick another host port, or set auto_correct: true on the rule to let a free port be chosen."
        )


class ForwardPortAutolistEmpty(ManagerError):
    """Repair was attempted but every usable port was taken."""

    def __init__(self, vm_name: str, guest_port: int, host_port: int) -> None:
        self.vm_name = vm_name
        self.guest_port = guest_port
        self.host_port = host_port
        super().__init__(
            f"Machine '{vm_name}': host port {host_port} (guest {guest_port}) collides and no usable "
            "port is left to repair it. Widen usable_port_range or free up ports."
        )


class EnvironmentLockedError(ManagerError):
    """The named process lock is held by another invocation."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Lock '{name}' is held by another process")


class LockTimeoutError(ManagerError):
    """The process lock could not be acquired within the configured attempts."""


class LeaseConflictError(ManagerError):
    """A lease marker for the key already exists on disk."""


class PassInterrupted(ManagerError):
    """The collision pass was interrupted by a termination signal."""


class BackendError(ManagerError):
    """The virtualization backend command failed."""
