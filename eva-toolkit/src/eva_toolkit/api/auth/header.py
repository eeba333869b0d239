"""
Header-based authentication.

The API is deployed behind a proxy that authenticates the user and forwards the
verified identity in a request header. 'HeaderAuthProvider' reads that header;
requests without it are rejected with 401. A 'default_user_id' can be set for
local development, where no proxy is present.
"""

from fastapi import FastAPI, HTTPException, Request
from loguru import logger

from eva_toolkit.api.auth.base import AuthProvider

DEFAULT_USER_HEADER = "X-User-Id"


class HeaderAuthProvider(AuthProvider):
    def __init__(self, header_name: str = DEFAULT_USER_HEADER, default_user_id: str | None = None) -> None:
        self.header_name = header_name
        self.default_user_id = default_user_id

    def get_current_user_id(self, request: Request) -> str:
        user_id = request.headers.get(self.header_name, "").strip() or self.default_user_id
        if not user_id:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return user_id

    def bind_to_app(self, app: FastAPI) -> None:
        if self.default_user_id:
            logger.warning(f"Requests without {self.header_name} are served as {self.default_user_id!r}")
