from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ImageStoreConfig(BaseModel):
    """Object storage holding user-uploaded chat images."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str | None = Field(default=None, validation_alias="IMAGE_STORE_URL")
    api_key: str | None = Field(default=None, validation_alias="IMAGE_STORE_KEY")
    bucket: str = Field(default="chat-uploads", validation_alias="IMAGE_BUCKET_NAME")

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @field_validator("url", mode="before")
    @classmethod
    def _validate_url(cls, value: Any) -> str | None:
        if value in (None, ""):
            return None
        url = str(value).strip().rstrip("/")
        if not url.startswith(("http://", "https://")):
            msg = "IMAGE_STORE_URL must start with http:// or https://"
            raise ValueError(msg)
        return url

    @field_validator("api_key", mode="before")
    @classmethod
    def _validate_api_key(cls, value: Any) -> str | None:
        if value in (None, ""):
            return None
        return str(value).strip()

    @field_validator("bucket", mode="before")
    @classmethod
    def _validate_bucket(cls, value: Any) -> str:
        bucket = str(value or "chat-uploads").strip()
        if "/" in bucket or ".." in bucket:
            msg = "IMAGE_BUCKET_NAME must be a single path segment"
            raise ValueError(msg)
        return bucket
