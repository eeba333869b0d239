import uvicorn

from eva_backend.app import build_app
from eva_backend.config import load_settings

if __name__ == "__main__":
    settings = load_settings()
    uvicorn.run(build_app(settings), host=settings.host, port=settings.port, log_config=None)
