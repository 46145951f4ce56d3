# collision/schemas.py
from __future__ import annotations

from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field

from collision.codes import CodeDraft, CodeFilters
from collision.location import LocationSnapshot


class Envelope(BaseModel):
    code: int = 200
    data: Any = None
    msg: str = "success"


# -------- Collision codes --------

class SubmitCodeIn(BaseModel):
    # the mini-program sends "keyword" on some pages
    tag: str = Field(default="", validation_alias=AliasChoices("tag", "keyword"))

    country: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None

    gender: Optional[int] = None
    age_min: Optional[int] = None
    age_max: Optional[int] = None

    validity_days: Optional[int] = Field(default=None, validation_alias=AliasChoices("validity_days", "days"))

    def to_draft(self) -> CodeDraft:
        return CodeDraft(
            tag=self.tag,
            location=LocationSnapshot(
                country=self.country,
                province=self.province,
                city=self.city,
                district=self.district,
            ),
            filters=CodeFilters(gender=self.gender, age_min=self.age_min, age_max=self.age_max),
            validity_days=self.validity_days,
        )


class BatchSubmitIn(BaseModel):
    items: List[SubmitCodeIn] = Field(default_factory=list, validation_alias=AliasChoices("items", "codes"))


class RenewIn(BaseModel):
    validity_days: Optional[int] = Field(default=None, validation_alias=AliasChoices("validity_days", "days"))


class UpdateCodeIn(BaseModel):
    tag: Optional[str] = Field(default=None, validation_alias=AliasChoices("tag", "keyword"))
    validity_days: Optional[int] = Field(default=None, validation_alias=AliasChoices("validity_days", "days"))


class SearchIn(BaseModel):
    keyword: str = ""


# -------- Matches --------

class MatchActionIn(BaseModel):
    match_id: int = Field(validation_alias=AliasChoices("match_id", "result_id"))


class HaidilaoIn(BaseModel):
    tag: str = Field(default="", validation_alias=AliasChoices("tag", "keyword"))


class SendEmailIn(BaseModel):
    match_id: int = Field(validation_alias=AliasChoices("match_id", "result_id"))
    content: str = ""


class RemarkIn(BaseModel):
    remark: str = ""


class CommonKeywordsIn(BaseModel):
    matched_user_id: int


# -------- Users --------

class ProfileUpdateIn(BaseModel):
    nickname: Optional[str] = None
    avatar: Optional[str] = None
    gender: Optional[int] = None
    age: Optional[int] = None

    country: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None

    location_visible: Optional[bool] = None
    allow_force_add: Optional[bool] = None
    allow_haidilao: Optional[bool] = None
    email_visible: Optional[bool] = None

    wechat_no: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class EmailBindIn(BaseModel):
    email: EmailStr


class EmailVerifyIn(BaseModel):
    email: EmailStr
    code: str


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    nickname: Optional[str] = None
    coins: int


# -------- Payments / admin --------

class SettleIn(BaseModel):
    user_id: int
    order_no: str
    coins: int


class RejectIn(BaseModel):
    reason: Optional[str] = None


class HotTagStatusIn(BaseModel):
    status: str
