from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, field_validator


class UploadStatus(BaseModel):
    upload_id: str
    offset: int
    upload_length: Optional[int] = None
    metadata: Dict[str, str] = {}
    expires: Optional[datetime] = None
    chunk_start: Optional[int] = None
    chunk_complete: bool
    is_complete: bool

    @field_validator('metadata', mode='before')
    @classmethod
    def decode_metadata(cls, v):
        if isinstance(v, dict):
            return {
                key: value.decode('utf-8', errors='replace') if isinstance(value, bytes) else value
                for key, value in v.items()
            }
        return v
