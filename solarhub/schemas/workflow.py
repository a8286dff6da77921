from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


class ProjectCreate(BaseModel):
    firm_id: int
    client_id: Optional[int] = None
    lead_id: Optional[str] = None
    crew_id: Optional[int] = None
    equipment_expected_date: Optional[date] = None
    work_start_date: Optional[date] = None
    work_end_date: Optional[date] = None
    notes: Optional[str] = None

    # Person at the installation site
    installation_person_first_name: Optional[str] = None
    installation_person_last_name: Optional[str] = None
    installation_person_address: Optional[str] = None
    installation_person_phone: Optional[str] = None
    installation_person_unique_id: Optional[str] = None

    @field_validator('lead_id','notes','installation_person_first_name','installation_person_last_name','installation_person_address','installation_person_phone','installation_person_unique_id', mode='before')
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class ProjectTransition(BaseModel):
    status: Optional[str] = None
    # Field -> new value; an explicit null clears the field
    changes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('status', mode='before')
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class NoteCreate(BaseModel):
    content: str
    priority: str = "normal"


class ActivityCreate(BaseModel):
    change_type: str
    description: str
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None


class InvoiceLineItem(BaseModel):
    description: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal
    product_key: Optional[str] = None


class InvoiceCreate(BaseModel):
    line_items: List[InvoiceLineItem]


class ReclamationCreate(BaseModel):
    project_id: int
    crew_id: int
    description: str
    deadline: date


class ReclamationReject(BaseModel):
    reason: str


class ReclamationComplete(BaseModel):
    notes: Optional[str] = None


class ReclamationReassign(BaseModel):
    crew_id: int
    deadline: Optional[date] = None
    description: Optional[str] = None

    @field_validator('description', mode='before')
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class ReclamationCancel(BaseModel):
    reason: Optional[str] = None
