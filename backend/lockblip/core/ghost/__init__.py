"""
Ghost Mode
==========

PIN-gated hidden conversations with one-time access PINs, encrypted
self-destructing messages, a security audit trail and real-time events.
"""

from .audit import AccessAuditLog, get_audit_log
from .channels import GhostChannelHub, GhostEvent, WSMessage, get_channel_hub
from .controller import ClientInfo, GhostController
from .credentials import PinCredentialStore
from .errors import GhostError
from .grants import AccessGrantLedger, Invitation, SessionAccess
from .messages import MessageStore, MessageView, ViewReceipt
from .reaper import ExpiryReaper, SweepStats
from .registry import ConversationSessionRegistry
from .vault import SessionKeyVault

__all__ = [
    # Orchestration
    "GhostController",
    "ClientInfo",
    "GhostError",
    # Stores
    "PinCredentialStore",
    "ConversationSessionRegistry",
    "AccessGrantLedger",
    "Invitation",
    "SessionAccess",
    "MessageStore",
    "MessageView",
    "ViewReceipt",
    "SessionKeyVault",
    # Background / real-time
    "AccessAuditLog",
    "get_audit_log",
    "ExpiryReaper",
    "SweepStats",
    "GhostChannelHub",
    "GhostEvent",
    "WSMessage",
    "get_channel_hub",
]
