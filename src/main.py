"""
main.py

Entry point for the Rate Desk back-office API.

Wires the in-memory infrastructure into the FastAPI app and starts uvicorn
with the host, port and log level from Settings (RATEDESK_* environment
variables or a .env file).

Usage
-----
    # Option 1: run directly
    python main.py

    # Option 2: run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
Every write needs the gateway headers, e.g.

    X-User-Id:   550e8400-e29b-41d4-a716-446655440000
    X-User-Role: Admin

1.  POST  /api/v1/variant-rates           create a rate for a product variant
2.  GET   /api/v1/variant-rates           list it again as Admin, as its
                                          Associate, and anonymously to see
                                          the commission masking
3.  PATCH /api/v1/variant-rates/{id}      edit it; a second edit within
                                          15 minutes is a cooling (draft) edit
4.  POST  /api/v1/enquiries               price an enquiry from the rate
5.  POST  /api/v1/projects                create a project
6.  POST  /api/v1/activities              add activities; PATCH them with
                                          dates, workers and a requested status
7.  GET   /api/v1/projects/{id}           watch the project status follow
"""

import uvicorn

from api import app, get_uow
from config import get_settings
from infrastructure import InMemoryUnitOfWork


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your own implementation.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=True,          # auto-reload on file changes during development
        log_level=settings.log_level.lower(),
    )
