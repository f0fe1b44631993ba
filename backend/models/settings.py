# backend/models/settings.py
from sqlalchemy import Column, String
from database import Base


# Key/value application settings, written with upsert semantics
class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=True)
