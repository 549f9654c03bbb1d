"""Per-task notification channels and the human approval gate."""

from .approvals import ApprovalGate
from .hub import NotificationBridge, WebSocketObserver

__all__ = ["ApprovalGate", "NotificationBridge", "WebSocketObserver"]
