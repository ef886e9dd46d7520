# app/main.py
import logging, sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.db.redis import r
from app.db.session import AsyncSessionLocal, engine as db_engine

from app.routers.wallet import router as wallet_router
from app.routers.admin import router as admin_router

from app.tasks.scheduler import start_scheduler, stop_scheduler
from app.services.bootstrap_service import build_engine, ensure_counter, init_db

app = FastAPI(
    title=settings.APP_NAME,
    version=getattr(settings, "APP_VERSION", "0.1.0"),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logging.getLogger("uvicorn").setLevel(logging.WARNING)
logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.CRITICAL)
logging.getLogger("apscheduler").setLevel(logging.ERROR)
logging.getLogger("httpx").setLevel(logging.WARNING)

# money movements stay visible
logging.getLogger("app.services").setLevel(logging.INFO)
logging.getLogger("app.tasks").setLevel(logging.INFO)

app.include_router(wallet_router)
app.include_router(admin_router)


@app.on_event("startup")
async def on_startup() -> None:
    # ConfigurationFatal propagates and aborts startup
    app.state.engine = build_engine(settings, AsyncSessionLocal, redis=r)
    await init_db(db_engine)
    async with AsyncSessionLocal() as session:
        await ensure_counter(session)
    start_scheduler(app.state.engine)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    stop_scheduler()
    wallet = getattr(app.state, "engine", None)
    if wallet is not None:
        await wallet.aclose()
    await r.aclose()
    await db_engine.dispose()


@app.get("/ping")
async def ping():
    return {"ok": True, "env": settings.APP_ENV}


@app.get("/healthz")
async def healthz():
    wallet = getattr(app.state, "engine", None)
    return {"status": "healthy", "real_money": bool(wallet and wallet.real_money)}
