"""Background workers."""
from .expiry_worker import ExpirySweeper, start_expiry_worker

__all__ = ["ExpirySweeper", "start_expiry_worker"]
