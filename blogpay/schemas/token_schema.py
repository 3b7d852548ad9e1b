from pydantic import BaseModel
from typing import Optional


class TokenData(BaseModel):
    """Claims of an access token issued by the auth service."""
    sub: str
    role: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
