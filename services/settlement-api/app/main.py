"""Campus Jobs Settlement API — payment settlement for completed jobs.

Creates destination charges that split a job's price between the platform
and the assigned worker, reconciles the processor's asynchronous events into
the settlement ledger, and serves payer/payee receipts.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import router
from app.core.config import settings
from app.core.database import engine
from app.core.errors import register_error_handlers
from app.core.middleware import RequestLoggingMiddleware

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)


DESCRIPTION = """\
Payment settlement for the **campus job marketplace**.

### Payment Lifecycle

| Step | Endpoint | Description |
|------|----------|-------------|
| 1 | `POST /v1/charges` | Poster creates the charge for an in-progress job |
| 2 | *device* | Payer confirms the charge with the returned `client_secret` |
| 3 | `POST /v1/webhooks/processor` | Processor reports the outcome and actual fee |
| 4 | `GET /v1/settlements/{id}/receipt` | Payer or worker reads their receipt |

### Authentication

User endpoints require the access token issued by the auth backend:

```
Authorization: Bearer <jwt>
```

The webhook endpoint is authenticated by its `Stripe-Signature` header instead.
"""


TAGS_METADATA = [
    {"name": "charges", "description": "Charge creation for in-progress jobs."},
    {"name": "webhooks", "description": "Signed events from the payment processor."},
    {"name": "settlements", "description": "Payer and worker receipts."},
    {"name": "ops", "description": "Health checks and operational endpoints."},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not settings.processor_secret_key:
        logger.warning("PROCESSOR_SECRET_KEY is not set; charge creation will fail")
    if not settings.processor_webhook_secret:
        logger.warning("PROCESSOR_WEBHOOK_SECRET is not set; webhooks will be rejected")
    yield
    await engine.dispose()


app = FastAPI(
    title="Campus Jobs Settlement API",
    version="0.1.0",
    description=DESCRIPTION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=TAGS_METADATA,
    lifespan=lifespan,
)

register_error_handlers(app)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/health", tags=["ops"])
async def health() -> dict[str, str]:
    return {"status": "ok", "service": "settlement-api"}
