from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .routes import router as api_router
from .logging_setup import configure_logging
from .errors import MarketplaceError
from . import cache, db
import logging

# configure file logging for the app
configure_logging()
logger = logging.getLogger("ridebid.main")

app = FastAPI(title="RideBid - Ride Bidding and Lifecycle API")

# Enable CORS for UI dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/v1")


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    logger.info("request_rejected: path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.on_event("startup")
async def _startup():
    logger.info("Starting RideBid API application")
    await db.init_db()


@app.get("/")
async def read_root():
    return {"message": "RideBid API"}


@app.get("/health")
async def health_check():
    return {"status": "ok", "redis": await cache.ping()}
