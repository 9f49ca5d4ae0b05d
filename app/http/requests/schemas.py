"""
Pydantic schemas for request/response validation (Http/Requests).
"""
from pydantic import BaseModel, Field, validator
from typing import Optional, List
from app.models import CredentialScheme

# Credential Schemas
class CredentialGenerateRequest(BaseModel):
    scheme: CredentialScheme = CredentialScheme.API_KEY_SECRET

    @validator("scheme")
    def validate_scheme(cls, v):
        if v == CredentialScheme.REMOTE_API_KEY:
            raise ValueError("Remote API keys are set, not generated")
        return v

class GeneratedCredentialResponse(BaseModel):
    credentialId: str
    storeId: str
    scheme: CredentialScheme
    identifier: str
    secret: Optional[str] = None
    message: str = "Store these credentials now; the secret will not be shown again."

class CredentialSummary(BaseModel):
    id: str
    scheme: CredentialScheme
    isActive: bool
    identifierHint: Optional[str] = None
    createdAt: Optional[str] = None
    rotatedAt: Optional[str] = None
    disabledAt: Optional[str] = None

class CredentialListResponse(BaseModel):
    credentials: List[CredentialSummary]

class RemoteApiKeyRequest(BaseModel):
    apiKey: str = Field(..., min_length=8)

    @validator("apiKey")
    def strip_key(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("API key cannot be empty")
        return v

# Integration Schemas
class IntegrationStatusRequest(BaseModel):
    enabled: bool

class IntegrationStatusResponse(BaseModel):
    storeId: str
    integrationEnabled: bool
    isActive: bool
    schemes: List[CredentialScheme]

# ShipStation Schemas
class ShipNotifyResponse(BaseModel):
    success: bool = True
    order_id: str
    tracking_number: Optional[str] = None
    changed: bool = True

class InventorySyncResponse(BaseModel):
    storeId: str
    synced: int
    errors: List[str]
    pagesFetched: int
    complete: bool

class JobReplayResponse(BaseModel):
    originalJobId: str
    jobId: str
