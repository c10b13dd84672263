"""
Request bodies for the sharing endpoints.

Field names follow the JSON the web client sends (camelCase).
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class InviteRequest(BaseModel):
    """Body of POST /api/invite."""

    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., min_length=1, description="Invitee email")
    resource_type: str = Field(..., alias="resourceType", min_length=1)
    resource_id: str = Field(..., alias="resourceId", min_length=1)
    permission: str | None = Field(None, description="view (default) or edit")


class LeaveRequest(BaseModel):
    """Body of POST /api/shared/leave."""

    model_config = ConfigDict(populate_by_name=True)

    resource_type: str = Field(..., alias="resourceType", min_length=1)
    resource_id: str = Field(..., alias="resourceId", min_length=1)


class PropagateRequest(BaseModel):
    """Body of POST /api/shared/propagate."""

    model_config = ConfigDict(populate_by_name=True)

    owner_id: str = Field(..., alias="ownerId", min_length=1)
    type: str = Field(..., min_length=1, description="Item type, e.g. task")
    data: dict[str, Any] = Field(..., description="The item; must carry an id")
