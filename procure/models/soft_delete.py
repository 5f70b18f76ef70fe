"""
Soft Delete Mixin.

Adds a ``removed`` flag (plus ``removed_at`` timestamp) and query helpers.
Roles, permissions and workflow definitions are never physically deleted
because history rows and audit entries keep pointing at them.

Usage:
    class MyModel(SoftDeleteMixin, db.Model):
        ...

    obj.soft_delete()
    db.session.commit()

    MyModel.query_active().all()
"""

from datetime import datetime, timezone

from procure.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    removed = db.Column(db.Boolean, nullable=False, default=False, index=True)
    removed_at = db.Column(db.DateTime, nullable=True, default=None)

    def soft_delete(self):
        """Mark this record as removed."""
        self.removed = True
        self.removed_at = datetime.now(timezone.utc)

    def restore(self):
        """Restore a removed record."""
        self.removed = False
        self.removed_at = None

    @classmethod
    def query_active(cls):
        """Return a query that excludes removed records."""
        return cls.query.filter(cls.removed.is_(False))
