"""
HoldingManager — Approval Workflow & Alerts
Finance entities read by the alert generator.

Invoices and contracts are owned by the dashboard's CRUD screens; these
mappings expose the columns the alert rules need and are never written by
the workflow/alert core.
"""

from holdingmanager.models import db


OPEN_INVOICE_STATUSES = ("sent", "partially_paid")
INVOICE_STATUSES = ("draft", "sent", "partially_paid", "paid", "cancelled")
CONTRACT_STATUSES = ("draft", "active", "suspended", "ended", "terminated")


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    numero = db.Column(db.String(32), nullable=False, unique=True)
    client_id = db.Column(db.Integer, nullable=True, index=True)
    issue_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=False, index=True)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    amount_paid = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)

    @property
    def outstanding(self):
        return (self.total_amount or 0) - (self.amount_paid or 0)

    def __repr__(self):
        return f"<Invoice {self.numero} [{self.status}] due={self.due_date}>"


class Contract(db.Model):
    __tablename__ = "contracts"

    id = db.Column(db.Integer, primary_key=True)
    numero = db.Column(db.String(32), nullable=False, unique=True)
    title = db.Column(db.String(255), nullable=False)
    client_id = db.Column(db.Integer, nullable=True, index=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True, index=True)
    amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    auto_renew = db.Column(db.Boolean, nullable=False, default=False)
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)

    def __repr__(self):
        return f"<Contract {self.numero} [{self.status}] ends={self.end_date}>"
