from pydantic import BaseModel
from typing import Optional


class ProxyPostRequest(BaseModel):
    url: Optional[str] = None
    hideReferer: bool = False
    removeCookies: bool = False


class ProxyRedirectResponse(BaseModel):
    success: bool
    message: str
    url: str
