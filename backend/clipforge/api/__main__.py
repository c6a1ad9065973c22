"""API server entry point for python -m clipforge.api"""
import logging

import uvicorn
from clipforge.config import settings

if __name__ == "__main__":
    logging.basicConfig(
        level=settings.server.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "clipforge.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level.lower(),
        reload=False,
    )
