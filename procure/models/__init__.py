"""
Procurement access-control & approval core.
SQLAlchemy extension instance shared by every model module.

Model modules:
    - auth:        Permission, Role, User (+ association tables)
    - audit:       AuditLog, write_audit
    - workflow:    WorkflowDefinition, ApprovalLevel, RoutingRule,
                   WorkflowInstance, ApprovalHistoryEntry
    - soft_delete: SoftDeleteMixin
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
