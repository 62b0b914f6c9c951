from typing import Any, Dict, List, Optional

from fastapi import status
from fastapi.responses import JSONResponse

from app.utils.mongodb_utils import build_pagination, serialize_document


def envelope(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    """Enveloppe canonique {success, message?, data?}"""
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = serialize_document(data)
    return body


def success_response(data: Any = None, message: Optional[str] = None, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(data, message))


def paginated_response(items: List[Any], page: int, limit: int, total: int, message: Optional[str] = None, **extra) -> JSONResponse:
    data = {"items": items, "pagination": build_pagination(page, limit, total)}
    data.update(extra)
    return success_response(data, message)
