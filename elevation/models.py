from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

class LoginReq(BaseModel):
    email: str
    password: str

class LoginResp(BaseModel):
    access_token: str
    session: Dict[str, Any]
    elevation_required: bool
    needs_setup: bool = False

class TotpEnrollReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    label: Optional[str] = Field(default=None, validation_alias=AliasChoices("label", "friendly_name"))

class PhoneEnrollReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    phone: str = Field(validation_alias=AliasChoices("phone", "phone_e164"))
    label: Optional[str] = Field(default=None, validation_alias=AliasChoices("label", "friendly_name"))

class FactorConfirmReq(BaseModel):
    code: str
    challenge_id: Optional[str] = None

class ElevationStartReq(BaseModel):
    # force re-verification even when the session is already elevated
    force: bool = False
    remember_device: bool = False

class ElevationSelectReq(BaseModel):
    factor_id: str

class ElevationVerifyReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    code: str = Field(validation_alias=AliasChoices("code", "totp_code", "sms_code"))
    generation: Optional[int] = None

class TrustedDeviceOut(BaseModel):
    record_id: str
    device_label: str = ""
    created_at: int = 0
    last_used_at: int = 0
    trusted_until: int = 0
    active: bool = False

class TrustedDeviceListResp(BaseModel):
    devices: List[TrustedDeviceOut] = Field(default_factory=list)
    stats: Dict[str, int] = Field(default_factory=dict)
