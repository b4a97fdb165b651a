"""Pydantic request models for the Duty Pharmacy Registry API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class PharmacyIdentity(BaseModel):
    name: str = Field(
        ...,
        min_length=3,
        description="Pharmacy name as the public knows it (e.g. 'Yildiz Eczanesi')",
    )
    address: str | None = Field(None, description="Street address, used only when creating a new pharmacy")
    phone: str | None = Field(None, description="Phone number, used only when creating a new pharmacy")


class CorrectedFields(BaseModel):
    name: str | None = Field(None, description="Corrected display name")
    address: str | None = Field(None, description="Corrected address")
    phone: str | None = Field(None, description="Corrected phone number")
    duty_hours: str | None = Field(None, description="Corrected duty hours, e.g. '08:00-08:00'")


class ManualOverrideRequest(BaseModel):
    region: str = Field(..., description="Region slug (e.g. 'istanbul')")
    district: str = Field(..., description="District slug or name within the region")
    pharmacy: PharmacyIdentity
    duty_date: str | None = Field(
        None,
        description="Duty date in YYYY-MM-DD format; defaults to the active duty date",
    )
    corrected: CorrectedFields = Field(default_factory=CorrectedFields)
    updated_by: str | None = Field(
        None,
        description="Who made the correction; defaults to the API key identity",
    )
    note: str | None = Field(None, max_length=500, description="Free-text reason for the override")


class ResolveAlertRequest(BaseModel):
    resolved_by: str | None = Field(
        None,
        description="Who resolved the alert; defaults to the API key identity",
    )
