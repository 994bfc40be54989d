"""
Request-scoped cookie writes.

Handlers and stores queue cookie changes on `request.state`; the app middleware flushes
them onto whatever response the handler returns. Reads go through `read_cookie` so a
value written (or deleted) earlier in the same request is observed by later reads.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from starlette.requests import Request
from starlette.responses import Response

_PENDING_ATTR = "sealauth_cookies"
_DELETED = object()


def _pending(request: Request) -> Dict[str, Dict[str, Any]]:
    pending = getattr(request.state, _PENDING_ATTR, None)
    if pending is None:
        pending = {}
        setattr(request.state, _PENDING_ATTR, pending)
    return pending


def cookie_kwargs(
    key: str,
    value: str,
    *,
    max_age: int,
    secure: bool,
    samesite: str = "lax",
    path: str = "/",
) -> Dict[str, Any]:
    return {
        "key": key,
        "value": value,
        "max_age": max_age,
        "httponly": True,
        "secure": secure,
        "samesite": samesite,
        "path": path,
    }


def queue_cookie(request: Request, **kwargs: Any) -> None:
    _pending(request)[kwargs["key"]] = kwargs


def queue_delete(request: Request, key: str, *, secure: bool, samesite: str = "lax", path: str = "/") -> None:
    kwargs = cookie_kwargs(key, "", max_age=0, secure=secure, samesite=samesite, path=path)
    kwargs["_deleted"] = _DELETED
    _pending(request)[key] = kwargs


def read_cookie(request: Request, key: str) -> Optional[str]:
    queued = _pending(request).get(key)
    if queued is not None:
        if queued.get("_deleted") is _DELETED:
            return None
        return queued["value"]
    return request.cookies.get(key)


def apply_cookies(request: Request, response: Response) -> Response:
    for kwargs in _pending(request).values():
        response.set_cookie(**{k: v for k, v in kwargs.items() if not k.startswith("_")})
    return response
