from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from procureflow.api import rfp, quotations, purchase_requests, item_master, suppliers
from procureflow.config import settings
from procureflow.database import engine
from procureflow.exceptions import ProcurementError
from procureflow.models import Base

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="ProcureFlow API", version="1.0.0")


@app.exception_handler(ProcurementError)
async def procurement_error_handler(request: Request, exc: ProcurementError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.error_type}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include routers
app.include_router(rfp.router, prefix="/api/rfps", tags=["RFP"])
app.include_router(quotations.router, prefix="/api/rfps", tags=["Quotations"])
app.include_router(purchase_requests.router, prefix="/api/purchase-requests", tags=["Purchase Requests"])
app.include_router(item_master.router, prefix="/api", tags=["Item Master"])
app.include_router(suppliers.router, prefix="/api/suppliers", tags=["Suppliers"])


@app.get("/")
async def root():
    return {"message": "ProcureFlow API is running"}


@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "services": {
            "catalog_search": "remote" if settings.catalog_search_url else "local"
        }
    }
