from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from rapidfire.config import get_settings
from rapidfire.database import Base, SessionLocal, engine
from rapidfire.errors import RapidFireError
from rapidfire.logging_config import configure_logging
from rapidfire.routers import router
from rapidfire.services.game_service import game_service
from rapidfire.services.question_bank import seed_question_bank

logger = configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_question_bank(db)
        restored = game_service.restore_timers(db)
        if restored:
            logger.info("Restored timers for %s ongoing sessions", restored)
    finally:
        db.close()
    yield


app = FastAPI(title="Rapid Fire Backend", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RapidFireError)
async def rapidfire_error_handler(request: Request, exc: RapidFireError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


app.include_router(router)


def run() -> None:
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
