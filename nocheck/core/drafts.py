"""
Boundary validation for drafts entering the offline queue.

A malformed draft is rejected here and never reaches the queue.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .schema import FieldResponse


class ResponseDraft(BaseModel):
    """One answered field; at most one of the value slots is populated."""
    field_id: int = Field(..., gt=0)
    value_text: Optional[str] = None
    value_number: Optional[float] = None
    value_json: Any = None

    @model_validator(mode="after")
    def validate_single_value(self):
        populated = [v for v in (self.value_text, self.value_number, self.value_json) if v is not None]
        if len(populated) > 1:
            raise ValueError(f"Field {self.field_id} has more than one value populated")
        return self

    def to_response(self) -> FieldResponse:
        return FieldResponse(
            field_id=self.field_id,
            value_text=self.value_text,
            value_number=self.value_number,
            value_json=self.value_json,
        )


def _reject_duplicate_fields(responses: List[ResponseDraft]) -> List[ResponseDraft]:
    seen = set()
    for response in responses:
        if response.field_id in seen:
            raise ValueError(f"Duplicate response for field {response.field_id}")
        seen.add(response.field_id)
    return responses


class SubmissionDraft(BaseModel):
    """A checklist filled on the device, possibly split in sections."""
    template_id: int = Field(..., gt=0)
    store_id: int = Field(..., gt=0)
    user_id: str = Field(..., min_length=1, max_length=128)
    sector_id: Optional[int] = Field(None, gt=0)
    responses: List[ResponseDraft] = Field(default_factory=list)
    section_ids: Optional[List[int]] = None

    @field_validator('user_id')
    @classmethod
    def validate_user_id(cls, v):
        if not v.strip():
            raise ValueError('user_id cannot be blank')
        return v.strip()

    @field_validator('responses')
    @classmethod
    def validate_responses(cls, v):
        return _reject_duplicate_fields(v)

    @field_validator('section_ids')
    @classmethod
    def validate_section_ids(cls, v):
        if v is None:
            return v
        if len(set(v)) != len(v):
            raise ValueError('section_ids must be unique')
        if any(sid <= 0 for sid in v):
            raise ValueError('section_ids must be positive')
        return v


class SectionResultDraft(BaseModel):
    responses: List[ResponseDraft] = Field(default_factory=list)

    @field_validator('responses')
    @classmethod
    def validate_responses(cls, v):
        return _reject_duplicate_fields(v)
