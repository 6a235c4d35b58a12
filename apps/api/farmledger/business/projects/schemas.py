from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


PartyType = Literal["LANDLORD", "HARI", "KAMDAR", "OTHER"]
ProjectStatus = Literal["ACTIVE", "CLOSED"]


class PartyCreate(BaseModel):
    tenant_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    party_type: PartyType


class PartyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    party_type: PartyType
    created_at: datetime


class ProjectCreate(BaseModel):
    tenant_id: str = Field(min_length=1)
    crop_cycle_id: UUID
    name: str = Field(min_length=1)
    hari_party_id: UUID | None = None


class ProjectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    crop_cycle_id: UUID
    name: str
    hari_party_id: UUID | None
    status: ProjectStatus
    created_at: datetime
