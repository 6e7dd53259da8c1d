import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import beneficiary_import
from app.api.routes import import_errors
from app.api.routes import import_runs
from app.api.routes import invoices
from app.api.routes import reconciliation
from app.core.config import settings
from app.core.database import create_tables
from app.core.exceptions import AppException, app_exception_handler

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(AppException, app_exception_handler)


@app.on_event("startup")
def startup():
    if settings.AUTO_CREATE_TABLES:
        create_tables()


CLIENT_PREFIX = "/clients/{client_id}"

app.include_router(beneficiary_import.router, prefix=CLIENT_PREFIX, tags=["Beneficiary Import"])
app.include_router(import_errors.router, prefix=CLIENT_PREFIX, tags=["Beneficiary Import Errors"])
app.include_router(import_runs.router, prefix=CLIENT_PREFIX, tags=["Import Runs"])
app.include_router(invoices.router, prefix=CLIENT_PREFIX, tags=["Invoices"])
app.include_router(reconciliation.router, prefix=CLIENT_PREFIX, tags=["Reconciliation"])


@app.get("/")
def root():
    return {"message": "API is running"}
