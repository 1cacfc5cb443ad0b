# app/models/user_models.py
from typing import Optional
from pydantic import BaseModel, Field


# 用于Token Payload (parent tokens; sub 是家长账户ID)
class TokenPayload(BaseModel):
    sub: Optional[str] = None
    type: Optional[str] = Field(default="access")
