from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel


class Settings(BaseModel):
    tags_table: str = "tags"
    bookings_table: str = "bookings"
    availability_table: str = "availability_blocks"
    user_pool_id: str | None = None
    resend_api_key: str | None = None
    email_from: str = "OmniNet <notify@omninethq.co.uk>"
    public_base_url: str = "https://omninethq.co.uk"
    notify_transport: Literal["inline", "eventbridge"] = "inline"
    event_bus_name: str = "default"
    email_timeout_seconds: float = 10.0
    datastore_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> Settings:
        env = os.environ
        values: dict[str, str] = {}
        for field in cls.model_fields:
            raw = env.get(field.upper())
            if raw is not None and raw.strip():
                values[field] = raw.strip()
        return cls.model_validate(values)

    def tag_url(self, tag_id: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/tags/{tag_id}"
