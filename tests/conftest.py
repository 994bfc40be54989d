"""
Pytest config.

Tests import the local `sealauth/` package; pin the repo root on sys.path so that works
even when the package is not installed (e.g. a global `pytest` entrypoint).
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Dict, Optional

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


@pytest.fixture
def make_request() -> Callable[..., "object"]:
    """
    Build a bare Starlette request for exercising stores without an app.
    """
    from starlette.requests import Request

    def _make(
        *,
        path: str = "/",
        query: str = "",
        cookies: Optional[Dict[str, str]] = None,
        method: str = "GET",
    ) -> Request:
        headers = [(b"host", b"testserver")]
        if cookies:
            headers.append((b"cookie", "; ".join(f"{k}={v}" for k, v in cookies.items()).encode("latin-1")))
        scope = {
            "type": "http",
            "method": method,
            "scheme": "http",
            "server": ("testserver", 80),
            "path": path,
            "root_path": "",
            "query_string": query.encode("latin-1"),
            "headers": headers,
        }
        return Request(scope)

    return _make
