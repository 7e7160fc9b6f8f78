"""
Request and response models for the classification correction API.
"""

from pydantic import BaseModel, field_validator, model_validator
from typing import Optional, List
from datetime import datetime

from ..core.schema import ActionType, Category, EditableRecord, UrgencyLevel


class ClassificationResponse(BaseModel):
    id: int
    category: Category
    urgency: UrgencyLevel
    action: ActionType
    version: int
    corrected_by: Optional[str] = None
    corrected_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: EditableRecord) -> 'ClassificationResponse':
        return cls(**record.to_dict())


class ClassificationListResponse(BaseModel):
    items: List[ClassificationResponse]
    count: int


class ClassificationUpdateRequest(BaseModel):
    category: Optional[Category] = None
    urgency: Optional[UrgencyLevel] = None
    action: Optional[ActionType] = None
    expected_version: int
    corrected_by: Optional[str] = None

    @field_validator('expected_version')
    @classmethod
    def version_must_be_positive(cls, v):
        if v < 1:
            raise ValueError('expected_version must be >= 1')
        return v

    @field_validator('corrected_by')
    @classmethod
    def corrected_by_must_not_be_empty(cls, v):
        if v is not None and not v.strip():
            raise ValueError('corrected_by cannot be empty')
        return v

    @model_validator(mode='after')
    def at_least_one_field(self):
        if not self.fields():
            raise ValueError('at least one of category, urgency, action is required')
        return self

    def fields(self):
        """The editable fields actually sent."""
        return {
            name: getattr(self, name)
            for name in ('category', 'urgency', 'action')
            if getattr(self, name) is not None
        }


class ConflictResponse(BaseModel):
    detail: str
    current_record: ClassificationResponse


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
