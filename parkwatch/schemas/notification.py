import re
from datetime import datetime
from typing import List, Optional

from bs4 import BeautifulSoup
from pydantic import BaseModel, field_validator, model_validator

from parkwatch.core.constants import NotificationType


class NotificationOut(BaseModel):
    id: int
    type: NotificationType
    title: str
    message: str
    related_id: Optional[int] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    @field_validator('message')
    @classmethod
    def format_message(cls, v):
        """Format HTML message to plain text"""
        if v:
            soup = BeautifulSoup(v, 'html.parser')
            plain_text = soup.get_text(" ", strip=True)
            return re.sub(r'\s+', ' ', plain_text).strip()
        return v

    class Config:
        from_attributes = True


class NotificationsListResponse(BaseModel):
    notifications: List[NotificationOut]
    total_count: int
    unread_count: int
    page: int
    limit: int


class MarkAsReadRequest(BaseModel):
    notification_ids: Optional[List[int]] = None
    all: bool = False

    @model_validator(mode="after")
    def require_target(self):
        if not self.all and not self.notification_ids:
            raise ValueError("Provide notification_ids or set all to true")
        return self


class MarkAsReadResponse(BaseModel):
    updated: int
    unread_count: int
