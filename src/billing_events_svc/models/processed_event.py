from sqlalchemy import Column, Integer, String

from billing_events_svc.models.base import Base, UTCDateTime, utcnow


class ProcessedEvent(Base):
    """
    Ledger of webhook event ids whose handling finished (successfully or as unprocessable).
    """
    __tablename__ = 'processed_events'
    __natural_key__ = 'event_id'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False)
    event_type = Column(String(128), nullable=False)
    outcome = Column(String(32), nullable=False)
    processed_at = Column(UTCDateTime, nullable=False, default=utcnow)
