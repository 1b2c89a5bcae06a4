from pydantic import BaseModel
from typing import Optional

class ResponseBase(BaseModel):
    """Base response schema."""
    success: bool
    message: Optional[str] = None
    data: Optional[dict] = None
