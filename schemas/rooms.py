from pydantic import BaseModel
from typing import Optional


class RoomDetailsResponse(BaseModel):
    code: str
    created_at: str
    has_host: bool
    has_guest: bool
    is_full: bool

class IceServer(BaseModel):
    urls: str
    username: Optional[str] = None
    credential: Optional[str] = None

class ClientConfigResponse(BaseModel):
    ice_servers: list[IceServer]
    chunk_size: int
    max_buffered_amount: int

class HealthResponse(BaseModel):
    status: str
    rooms: int
    backend: str
