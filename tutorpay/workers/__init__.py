"""Background workers for async processing."""
from .pending_sweeper import start_pending_sweeper, sweep_pending_once

__all__ = ["start_pending_sweeper", "sweep_pending_once"]
