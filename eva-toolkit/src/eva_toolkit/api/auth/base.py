"""
Who is calling the API.

An 'AuthProvider' resolves the caller's user id for each request. Every
conversation-scoped route resolves the user through it, and the controller only
serves conversations owned by that user.

The toolkit ships 'HeaderAuthProvider', which trusts a user id set by an
authenticating proxy in front of the API.
"""

from abc import ABC, abstractmethod

from fastapi import FastAPI, Request


class AuthProvider(ABC):
    """
    Resolves the user id of a request.

    'get_current_user_id' is used as a FastAPI dependency by the routes;
    'bind_to_app' lets a provider add its own routes or middleware.
    """

    @abstractmethod
    def get_current_user_id(self, request: Request) -> str:
        """Return the caller's user id, or raise a 401 'HTTPException'."""
        pass

    @abstractmethod
    def bind_to_app(self, app: FastAPI) -> None:
        pass
