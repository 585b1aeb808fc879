import enum

from sqlalchemy import Column, Integer, String

from billing_events_svc.models.base import Base, UTCDateTime, utcnow


class InvoiceStatus(str, enum.Enum):
    PAID = "paid"
    FAILED = "failed"


class Invoice(Base):
    __tablename__ = 'invoices'
    __natural_key__ = 'external_invoice_ref'

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_invoice_ref = Column(String(255), unique=True, nullable=False, index=True)
    subscription_ref = Column(String(255), nullable=False, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)
    status = Column(String(16), nullable=False)
    paid_at = Column(UTCDateTime, nullable=True)
    due_date = Column(UTCDateTime, nullable=True)
    document_url = Column(String(1024), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Invoice(ref={self.external_invoice_ref}, status={self.status}, amount={self.amount} {self.currency})>"
