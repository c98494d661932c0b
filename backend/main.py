"""
RSL Platform — Really Simple Licensing API

FastAPI application for registering RSL content licenses, evaluating access
requests against them, issuing OAuth access tokens and notifying owners
through signed webhooks.

Run with: uvicorn main:app (from backend/)
"""

import logging

from core.app import create_app

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


if __name__ == "__main__":
    import uvicorn
    from core.config import settings

    uvicorn.run("main:app", host=settings.host, port=settings.port)
