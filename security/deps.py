from __future__ import annotations

import os

from fastapi import HTTPException, Request


def _admin_token() -> str | None:
    tok = os.getenv("ADMIN_TOKEN")
    if tok:
        return str(tok)
    return None


def require_auth(request: Request) -> None:
    """Require a token for usage writes when ADMIN_TOKEN is set.

    Accepts either:
    - Authorization: Bearer <token>
    - X-Admin-Token: <token>
    """
    tok = _admin_token()
    if not tok:
        return

    auth = request.headers.get("authorization")
    via_header = None
    if auth and auth.lower().startswith("bearer "):
        via_header = auth.split(" ", 1)[1].strip()
    candidate = via_header or request.headers.get("x-admin-token")
    if candidate != tok:
        raise HTTPException(status_code=401, detail="Unauthorized")
