# backend/main.py
import logging
from pathlib import Path

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from database import get_db, init_db
from utils.errors import LedgerError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Router imports (they also register the models on Base.metadata)
from routes.items import router as items_router
from routes.workorders import router as workorders_router
from routes.settings import router as settings_router
from routes.reports import router as reports_router
from routes.stock import router as stock_router
from routes.logs import router as logs_router

# Initialisation
init_db()

app = FastAPI(title="Inventory & Work Order API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---- ERROR HANDLERS ----
@app.exception_handler(LedgerError)
async def _ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.code, "detail": exc.detail},
    )


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("%s %s rejected: invalid request", request.method, request.url.path)
    return JSONResponse(
        status_code=400,
        content={"ok": False, "error": "invalid_input", "detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s error", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"ok": False, "error": "server_error"})


# Router registration
app.include_router(items_router)
app.include_router(workorders_router)
app.include_router(settings_router)
app.include_router(reports_router)
app.include_router(stock_router)
app.include_router(logs_router)

ROUTES = [
    "/", "/health",
    # items
    "/api/items",                               # GET list, POST intake
    "/api/items/{batch_id}",                    # PUT set qty, DELETE batch
    "/api/items/{batch_id}/adjust",             # PATCH +/- adjust with movement
    # work orders
    "/api/workorders",                          # GET list, POST create
    "/api/workorders/{id}",                     # DELETE
    "/api/workorders/{id}/status",              # PUT status
    "/api/workorders/{id}/lines",               # GET/POST lines
    "/api/workorders/{id}/lines/{line_id}",     # DELETE line
    "/api/workorders/{id}/lines/{line_id}/issue",
    "/api/workorders/{id}/lines/{line_id}/return",
    # settings, reports, movements
    "/api/settings",
    "/api/reports/lowstock",
    "/api/movements",
    "/api/logs",
]


@app.get("/health", tags=["Health"])
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Health check DB error: %s", exc)
        return JSONResponse(status_code=500, content={"ok": False, "error": "db_unreachable"})
    return {"ok": True}


@app.get("/routes", tags=["Health"])
def list_routes():
    return {"ok": True, "routes": ROUTES}


# Browser UI (inventory.html and its assets) when the directory is shipped
static_dir = Path(settings.STATIC_DIR)


@app.get("/", include_in_schema=False)
def read_root():
    index = static_dir / "inventory.html"
    if index.is_file():
        return FileResponse(str(index))
    return {"message": "Inventory API is running", "routes": "/routes"}


if static_dir.is_dir():
    app.mount("/", StaticFiles(directory=str(static_dir)), name="static")


if __name__ == "__main__":
    import uvicorn

    logger.info("Server listening at http://localhost:%s", settings.PORT)
    uvicorn.run("main:app", host="0.0.0.0", port=settings.PORT)
