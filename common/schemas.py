from datetime import date as Date, datetime
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, model_validator

class Cardholder(BaseModel):
    model_config = ConfigDict(extra="allow")

    phoneCode: Optional[str] = None
    phone_number: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    nationalid: Optional[str] = None
    taxid: Optional[str] = None
    note: Optional[str] = None
    receipt: Optional[bool] = None
    paymentType: Optional[str] = None
    upload: Optional[Union[bool, str]] = None
    receiptName: Optional[str] = None
    company: Optional[str] = None
    campus: Optional[str] = None

class ChargeRequest(BaseModel):
    """Body of POST /payment; required fields are checked by the pipeline"""
    prime: Optional[str] = None
    amount: Optional[int] = None
    cardholder: Optional[Cardholder] = None

class DonationRecord(BaseModel):
    """One donation as it travels through the settlement queue into storage"""
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    amount: int
    currency: str
    date: Date
    phone_number: str = Field(alias="phoneNumber")
    email: str = ""
    receipt: bool = False
    payment_type: str = Field(default="", alias="paymentType")
    upload: Union[bool, str] = False
    receipt_name: str = Field(default="", alias="receiptName")
    nationalid: str = ""
    company: str = ""
    taxid: str = ""
    note: str = ""
    campus: str = ""
    tp_trade_id: Optional[str] = Field(default=None, alias="tpTradeID")
    is_success: bool = Field(default=False, alias="isSuccess")
    env: str
    imported: bool = False
    external_import_id: Optional[str] = Field(default=None, alias="externalImportId")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    @model_validator(mode="after")
    def successful_charge_has_trade_id(self):
        if self.is_success and not self.tp_trade_id:
            raise ValueError("isSuccess requires a non-empty tpTradeID")
        return self

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

class DonationRow(DonationRecord):
    """Stored donation as returned by the admin read"""
    id: int

class JobPayload(BaseModel):
    givingData: DonationRecord
