"""CiA 402 drive profile: state machine, operation modes, object store and motor layer."""

__version__ = "0.1.0"
__all__ = ["modes", "motor", "state", "status", "storage"]