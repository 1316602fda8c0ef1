"""API server entry point for python -m reelflow.api"""
import uvicorn
from reelflow.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "reelflow.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
    )
