"""Success envelope shared by every REST route: {success, data?, message?}."""
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder


def ok(data: Any = None, message: Optional[str] = None) -> dict:
    payload: dict = {"success": True}
    if data is not None:
        payload["data"] = jsonable_encoder(data)
    if message:
        payload["message"] = message
    return payload
