"""
Typed GP51 payloads, validated where the platform client hands them over.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GP51UserRecord(BaseModel):
    """A GP51 account as returned by queryuserdetail."""
    model_config = ConfigDict(extra="ignore")

    username: str = Field(..., min_length=1)
    usertype: int = 11  # 3 sub admin, 4 company admin, 11 end user
    showname: Optional[str] = None
    companyname: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("username")
    def strip_username(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("username is blank")
        return v

    @field_validator("email")
    def check_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if "@" not in v:
            raise ValueError(f"malformed email: {v}")
        return v.lower()

    def to_fleet_fields(self) -> Dict[str, Any]:
        return {
            "gp51_username": self.username,
            "name": self.showname or self.username,
            "email": self.email or f"{self.username}@imported.gp51",
            "phone_number": self.phone,
            "company_name": self.companyname,
            "gp51_user_type": self.usertype,
            "registration_status": "active",
            "is_gp51_imported": True,
            "import_source": "bulk_import",
            "needs_password_set": True,
        }


class GP51DeviceRecord(BaseModel):
    """A GP51 device as returned by querydevicedetail."""
    model_config = ConfigDict(extra="ignore")

    deviceid: str = Field(..., min_length=1)
    devicename: str = Field(..., min_length=1)
    devicetype: Optional[int] = None
    creater: Optional[str] = None
    simnum: Optional[str] = None
    deviceenable: int = 1
    lastactivetime: Optional[datetime] = None

    @field_validator("lastactivetime", mode="before")
    def parse_epoch_millis(cls, v: Any) -> Any:
        """GP51 reports timestamps as epoch milliseconds."""
        if isinstance(v, (int, float)):
            if v <= 0:
                return None
            return datetime.fromtimestamp(v / 1000, tz=timezone.utc)
        return v

    def to_fleet_fields(self, synced_at: datetime) -> Dict[str, Any]:
        return {
            "gp51_device_id": self.deviceid,
            "name": self.devicename,
            "owner_username": self.creater,
            "device_type": str(self.devicetype) if self.devicetype is not None else None,
            "sim_number": self.simnum,
            "status": "active" if self.deviceenable == 1 else "inactive",
            "is_gp51_synced": True,
            "last_active_at": self.lastactivetime,
            "last_gp51_sync": synced_at,
        }


class GP51DeviceSummary(BaseModel):
    """Device entry from querymonitorlist, used for planning."""
    model_config = ConfigDict(extra="ignore")

    deviceid: str
    devicename: Optional[str] = None
    creater: Optional[str] = None
