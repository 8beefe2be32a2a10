"""Async persistence for audit entries and completed sessions.

Provides:
- init_database / create_session_factory / get_session
- append_audit_entry / verify_audit_chain / list_audit_entries
- save_session_summary / list_session_summaries
"""

from .audit import append_audit_entry, list_audit_entries, verify_audit_chain
from .database import create_session_factory, get_session, init_database
from .models import Base, DecisionAuditLog, SessionRecord
from .sessions import list_session_summaries, save_session_summary

__all__ = [
    "Base",
    "DecisionAuditLog",
    "SessionRecord",
    "init_database",
    "create_session_factory",
    "get_session",
    "append_audit_entry",
    "verify_audit_chain",
    "list_audit_entries",
    "save_session_summary",
    "list_session_summaries",
]
