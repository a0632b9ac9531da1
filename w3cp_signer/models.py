from pydantic import BaseModel
from typing import Optional

class LiftRequest(BaseModel):
    cpId: Optional[str] = None
    did: Optional[str] = None

class HealthResponse(BaseModel):
    status: str
    attester: str
    cacheSize: int
