import uuid
from typing import Optional

from fastapi import Header, Request


def get_correlation_id(request: Request, x_correlation_id: Optional[str] = Header(None)) -> str:
    return x_correlation_id or getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
