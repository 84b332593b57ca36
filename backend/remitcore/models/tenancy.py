from __future__ import annotations

from ..extensions import db
from remitcore.time_utils import to_utc_z

class Organization(db.Model):
    """
    Multi-tenant root: every nonprofit using the platform is an Organization.

    WHY: Shared-database multi-tenancy with strict isolation.
    Transactions, remittances, leases and users belong to exactly one
    organization. No data may cross organization boundaries.

    DESIGN:
    - Organizations are the tenant boundary
    - All remittance queries are scoped by org_id
    - Lease keys are (org_id, parent_transaction_id)
    """
    __tablename__ = "organizations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)  # Short code for lookups

    # Fiscal identifier of the nonprofit (CIF/NIF)
    tax_id = db.Column(db.String(32), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Organization id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "tax_id": self.tax_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
