"""
Inbound email webhook payload (Brevo inbound parsing format).

Field names on the wire are PascalCase; Python attributes are snake_case.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class EmailAddress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: str = Field(..., alias="Address")
    name: Optional[str] = Field(None, alias="Name")


class InboundAttachment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, alias="Name")
    content_type: str = Field("application/octet-stream", alias="ContentType")
    content_length: Optional[int] = Field(None, alias="ContentLength")
    download_token: str = Field(..., alias="DownloadToken")


class InboundEmailItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(..., alias="MessageId")
    sender: Optional[EmailAddress] = Field(None, alias="From")
    recipients: List[EmailAddress] = Field(default_factory=list, alias="To")
    subject: Optional[str] = Field(None, alias="Subject")
    attachments: List[InboundAttachment] = Field(default_factory=list, alias="Attachments")


class InboundWebhookPayload(BaseModel):
    items: List[InboundEmailItem] = []
