from sqlalchemy import Column, DateTime, Integer, Text

from salesbot.database import Base


class TransportSettings(Base):
    __tablename__ = "transport_settings"

    id = Column(Integer, primary_key=True, default=1)
    access_token = Column(Text)
    phone_number_id = Column(Text)
    verify_token = Column(Text)
    app_id = Column(Text)
    app_secret = Column(Text)
    business_account_id = Column(Text)
    updated_at = Column(DateTime(timezone=True))
