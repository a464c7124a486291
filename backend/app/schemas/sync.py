"""Pydantic v2 schemas for the reconciliation (sync) endpoints."""

from typing import Any

from pydantic import BaseModel, ConfigDict


class DiscrepancyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: str
    field: str
    local_value: Any
    external_value: Any
    severity: str  # "info", "warning" or "critical"


class FieldRepairResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    field: str
    action: str  # "pulled", "pushed" or "created"
    success: bool
    error: str | None


class ValidationReport(BaseModel):
    entity_type: str
    entity_id: str
    in_sync: bool
    discrepancies: list[DiscrepancyResponse]


class RepairReport(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: str
    status: str  # "clean", "repaired", "partial" or "failed"
    repairs: list[FieldRepairResponse]
    discrepancies: list[DiscrepancyResponse]
