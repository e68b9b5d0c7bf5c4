from sqlalchemy import JSON, Column, Float, Integer, Text

from salesbot.database import Base


class Product(Base):
    __tablename__ = "products"

    id = Column(Text, primary_key=True)
    position = Column(Integer, nullable=False, default=0)
    category = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    price_min = Column(Float, nullable=False)
    price_max = Column(Float, nullable=False)
    description = Column(Text, nullable=False, default="")
    specs = Column(JSON, nullable=False, default=dict)
    images = Column(JSON, nullable=False, default=list)
