from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Literal, Optional

from .models import ServerStatus


class ServerCreate(BaseModel):
    id: str = Field(..., min_length=1)
    name: str
    host: str
    port: int = Field(27015, ge=1, le=65535)
    enabled: bool = True


class ServerUpdate(BaseModel):
    name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = Field(None, ge=1, le=65535)
    enabled: Optional[bool] = None


class ServerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    host: str
    port: int
    enabled: bool
    current_match_slug: Optional[str] = None
    last_status: Optional[ServerStatus] = None
    online: bool
    last_seen_at: Optional[datetime] = None


class StatusDescription(BaseModel):
    label: str
    description: str
    color: Literal["success", "warning", "error", "info", "default"]
