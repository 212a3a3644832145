"""
Pydantic schemas for the resource/action catalog.
"""
from typing import List
from pydantic import BaseModel, ConfigDict


class ActionResponse(BaseModel):
    """Schema for an action."""
    name: str
    display_name: str
    description: str

    model_config = ConfigDict(from_attributes=True)


class ResourceResponse(BaseModel):
    """Schema for a resource and the actions it supports."""
    name: str
    display_name: str
    description: str
    actions: List[str]

    model_config = ConfigDict(from_attributes=True)
