"""Raw passthrough response from the remote embedding model"""

from pydantic import BaseModel, Field


class ProxyResponse(BaseModel):
    """Response forwarded to a proxy-mode caller"""

    status_code: int = Field(ge=100, le=599, description="HTTP status to return")
    body: bytes = Field(description="Response body, forwarded verbatim")
    content_type: str = Field(default="application/json", description="Content-Type header")
