from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

ScanMethod = Literal["camera", "tap", "manual"]


class VerifyRequest(BaseModel):
    # Missing fields verify as invalid instead of surfacing a schema error
    token: str = ""
    signature: str = ""


class VerifyResponse(BaseModel):
    valid: bool


class ScanRequest(BaseModel):
    token: str = Field(..., min_length=1)
    signature: Optional[str] = None
    method: ScanMethod = "camera"


class ScanResponse(BaseModel):
    admitted: bool
    reason: str
    ticket_code: Optional[str] = None
    holder_name: Optional[str] = None
    status: Optional[str] = None
    entries_remaining: Optional[int] = None


class ManifestEntry(BaseModel):
    token: str
    signature: str
    code: str
    status: str
    holder_name: Optional[str] = None
    entries_remaining: int


class ManifestResponse(BaseModel):
    event_id: str
    generated_at: datetime
    tickets: List[ManifestEntry]


class OfflineScan(BaseModel):
    token: str
    signature: Optional[str] = None
    method: ScanMethod = "camera"
    scanned_at: datetime
    device_id: Optional[str] = None


class OfflineSyncRequest(BaseModel):
    scans: List[OfflineScan] = Field(default_factory=list)


class OfflineScanResult(BaseModel):
    token: str
    # accepted | conflict | rejected | unknown
    outcome: str
    reason: str


class OfflineSyncResponse(BaseModel):
    results: List[OfflineScanResult]
    accepted: int
    conflicts: int
