"""
Local fleet records populated from the GP51 platform.
"""
from sqlalchemy import Column, String, DateTime, Boolean, Integer

from app.models.base import Base


class FleetUser(Base):
    """Fleet user mirrored from a GP51 account."""

    gp51_username = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True, index=True)
    phone_number = Column(String, nullable=True)
    company_name = Column(String, nullable=True)
    gp51_user_type = Column(Integer, nullable=True)
    registration_status = Column(String, nullable=False, default="active")
    is_gp51_imported = Column(Boolean, nullable=False, default=False)
    import_source = Column(String, nullable=True)
    needs_password_set = Column(Boolean, nullable=False, default=False)


class Vehicle(Base):
    """Vehicle mirrored from a GP51 device."""

    gp51_device_id = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)
    owner_username = Column(String, nullable=True, index=True)
    device_type = Column(String, nullable=True)
    sim_number = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")
    is_gp51_synced = Column(Boolean, nullable=False, default=False)
    last_active_at = Column(DateTime(timezone=True), nullable=True)
    last_gp51_sync = Column(DateTime(timezone=True), nullable=True)
